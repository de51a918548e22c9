"""Authentication and session Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelModel):
    """Login form; every field is optional so missing input maps to a 400."""

    username: str | None = Field(None, description="Login name")
    password: str | None = Field(
        None, description="Base64 credential envelope, or plaintext when encryption is off"
    )
    password_encrypted: bool = Field(False, alias="passwordEncrypted")
    captcha_session_id: str | None = Field(None, alias="captchaSessionId")
    captcha_input: str | None = Field(None, alias="captchaInput")


class RegisterRequest(LoginRequest):
    """Registration form."""

    email: str | None = Field(None, description="Contact e-mail address")
    first_name: str | None = Field(None, alias="firstName")
    last_name: str | None = Field(None, alias="lastName")


class UserSummary(_CamelModel):
    """User fields returned after login and by ``/api/auth/user``."""

    id: int
    username: str
    email: str | None = None
    role: str
    first_name: str | None = Field(None, alias="firstName")
    last_name: str | None = Field(None, alias="lastName")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class LogoutResponse(_CamelModel):
    message: str
    session_destroyed: bool = Field(..., alias="sessionDestroyed")
    timestamp: str


class SessionStatus(_CamelModel):
    valid: bool
    time_remaining: int = Field(..., alias="timeRemaining")
    is_warning: bool = Field(..., alias="isWarning")
    last_activity: int = Field(..., alias="lastActivity", description="Epoch milliseconds")
    session_id: str = Field(..., alias="sessionId", description="Truncated session id")


class ExtendSessionResponse(_CamelModel):
    success: bool
    message: str
    time_remaining: int = Field(..., alias="timeRemaining")


class PublicKeyResponse(_CamelModel):
    public_key_pem: str = Field(..., alias="publicKeyPem")
    encryption_enabled: bool = Field(..., alias="encryptionEnabled")
