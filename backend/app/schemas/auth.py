from pydantic import BaseModel, Field


class RegisterIn(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=256)
    full_name: str | None = Field(default=None, max_length=120)


class LoginIn(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=256)


class VerifyOtpIn(BaseModel):
    challenge_id: int
    code: str = Field(min_length=1, max_length=12)


class CodeIn(BaseModel):
    code: str = Field(min_length=1, max_length=12)


class ChangePasswordIn(BaseModel):
    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class PasswordResetRequestIn(BaseModel):
    email: str = Field(min_length=3, max_length=320)


class PasswordResetConfirmIn(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    code: str = Field(min_length=1, max_length=12)
    new_password: str = Field(min_length=1, max_length=256)
