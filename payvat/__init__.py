"""Backend package: DB models, pipelines, APIs.

This package covers document upload and VAT extraction, VAT3 return
calculation and submission, payments, and guest account lifecycle.
"""
