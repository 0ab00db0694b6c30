from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class Profile(BaseModel):
    user_id: str
    full_name: str = ""
    email: str | None = None
    role: str = "client"  # "client" | "forwarder" | "admin"
    loyalty_points: int = 0
    referral_code: str | None = None
    referred_by: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else v
