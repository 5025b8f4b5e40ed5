"""
reconciler/models/user.py

Purpose: User document model (read-only here)

- Canonical account created by the application's registration/auth flows
- Verified email and WhatsApp/phone numbers used for identity matching
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class User(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    email: Optional[str] = None
    whatsapp_number: Optional[str] = None
    phone: Optional[str] = None
    full_name: Optional[str] = Field(default=None, alias="display_name")
