"""HTTP route modules, mounted under ``/api``."""
from fastapi import APIRouter

from . import admin, auth, documents, payments, reports, upload, vat

api_router = APIRouter(prefix="/api")
api_router.include_router(auth.router)
api_router.include_router(upload.router)
api_router.include_router(documents.router)
api_router.include_router(vat.router)
api_router.include_router(payments.router)
api_router.include_router(reports.router)
api_router.include_router(admin.router)
