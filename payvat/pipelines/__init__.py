"""Document pipelines: upload processing, batch uploads, duplicates, guest cleanup.

Each step is callable on its own so both API routes and background jobs
can use it.
"""
