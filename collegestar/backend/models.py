from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, EmailStr, Field

class UserCreds(BaseModel):
    email: EmailStr
    password: str

class RegisterData(UserCreds):
    full_name: str = ""

class NoteUpdate(BaseModel):
    """Partial note update; omitted fields keep their value."""
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None

class ProfileUpdate(BaseModel):
    """Partial profile update, accepting the web client's camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    institute: Optional[str] = None
    course: Optional[str] = None
    stream: Optional[str] = None
    interests: Optional[List[str]] = None
    last_qualification: Optional[str] = Field(None, alias="lastQualification")
    aim: Optional[str] = None
    study_hours: Optional[str] = Field(None, alias="studyHours")
    preferred_content: Optional[str] = Field(None, alias="preferredContent")
    # Accepted for compatibility; completion is always recomputed.
    profile_completion: Optional[int] = Field(None, alias="profileCompletion")
    donor_verified: Optional[bool] = Field(None, alias="donorVerified")
    donor_amount: Optional[float] = Field(None, alias="donorAmount")
    donor_at: Optional[str] = Field(None, alias="donorAt")

class UserResponse(BaseModel):
    success: bool
    user_id: str
    message: str = "User registered successfully"

class LoginResponse(BaseModel):
    success: bool
    token: str
    user_id: str
    message: str = "Login successful"

class CurrentUserResponse(BaseModel):
    id: str
    email: str

class MessageResponse(BaseModel):
    success: bool
    message: str

class NoteOut(BaseModel):
    id: str
    user_id: str
    title: str
    description: str
    subject: str
    tags: List[str]
    file_name: str
    file_url: str
    download_count: int
    created_time: str
    updated_time: str
    author_name: Optional[str] = None

class ProfileOut(BaseModel):
    id: str
    email: str
    full_name: str
    bio: str
    avatar_url: str
    institute: str
    course: str
    stream: str
    interests: List[str]
    lastQualification: str
    aim: str
    studyHours: str
    preferredContent: str
    profileCompletion: int
    donorVerified: bool
    donorAmount: Optional[float] = None
    donorAt: Optional[str] = None
    created_time: str

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    users_count: int
    active_sessions: int
    notes_count: int
