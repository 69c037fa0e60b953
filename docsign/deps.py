from typing import Any

from fastapi import Request
from pydantic import BaseModel

from docsign.service import SigningService


def get_service(request: Request) -> SigningService:
    return request.app.state.service


def ok(data: Any) -> dict:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    return {"success": True, "data": data}
