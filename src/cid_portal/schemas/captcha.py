"""CAPTCHA Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field


class CaptchaResponse(BaseModel):
    """A freshly issued challenge."""

    id: str = Field(..., description="Challenge handle to echo back with the answer")
    svg: str = Field(..., description="Rendered challenge image")


class CaptchaVerifyRequest(BaseModel):
    session_id: str | None = Field(None, alias="sessionId")
    user_input: str | None = Field(None, alias="userInput")

    model_config = ConfigDict(populate_by_name=True)


class CaptchaVerifyResponse(BaseModel):
    valid: bool


class CaptchaRefreshRequest(BaseModel):
    session_id: str | None = Field(None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)
