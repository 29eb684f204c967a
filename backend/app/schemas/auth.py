# backend/app/schemas/auth.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class MeResponse(BaseModel):
    id: str
    email: str
    role: str
    status: str

    first_name: Optional[str] = None
    last_name: Optional[str] = None
