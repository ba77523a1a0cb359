from typing import Optional

from pydantic import BaseModel, Field


class MailSyncRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    page_token: Optional[str] = None


class CalendarSyncRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class ScheduleRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1, max_length=500)
    timezone: Optional[str] = Field(None, description="IANA zone name, e.g. Europe/Paris")


class ConnectedResponse(BaseModel):
    status: str = "connected"
    user_id: str
    scope: str
    account_email: str = ""


class ErrorResponse(BaseModel):
    error: str
    message: str


class FocusSuggestRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    timezone: Optional[str] = Field(None, description="IANA zone name, e.g. Europe/Paris")
    minutes: int = Field(30, ge=5, le=240)
