from fastapi import APIRouter
from app.api.v1 import orders, payments

api_router = APIRouter()

api_router.include_router(orders.router)
api_router.include_router(payments.router)
