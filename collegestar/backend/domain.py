from typing import Any, Dict, List, Optional

# Fields that count towards profile completion, in display order.
COMPLETION_FIELDS = (
    "institute",
    "course",
    "stream",
    "interests",
    "last_qualification",
    "aim",
    "study_hours",
    "preferred_content",
)

class Note:
    """Represents a single uploaded study note and its file reference."""

    def __init__(self, id: str, user_id: str, title: str, description: str, subject: str,
                 tags: List[str], file_name: str, file_url: str, download_count: int,
                 created_time: str, updated_time: str):
        self.id = id
        self.user_id = user_id
        self.title = title
        self.description = description
        self.subject = subject
        self.tags = tags
        self.file_name = file_name
        self.file_url = file_url
        self.download_count = download_count
        self.created_time = created_time
        self.updated_time = updated_time

    def to_dict(self, author_name: Optional[str] = None) -> Dict[str, Any]:
        """Convert note to dictionary representation."""
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "subject": self.subject,
            "tags": list(self.tags),
            "file_name": self.file_name,
            "file_url": self.file_url,
            "download_count": self.download_count,
            "created_time": self.created_time,
            "updated_time": self.updated_time,
        }
        if author_name is not None:
            data["author_name"] = author_name
        return data

class Profile:
    """
    A user's public profile.

    Holds identity, the free-text academic fields collected during onboarding
    and the donor flags set by the donation flow. ``profile_completion`` is
    always derived from the other fields, never taken from a client.
    """

    def __init__(self, id: str, email: str, full_name: str = "", bio: str = "",
                 avatar_url: str = "", institute: str = "", course: str = "", stream: str = "",
                 interests: Optional[List[str]] = None, last_qualification: str = "",
                 aim: str = "", study_hours: str = "", preferred_content: str = "",
                 profile_completion: int = 0, donor_verified: bool = False,
                 donor_amount: Optional[float] = None, donor_at: Optional[str] = None,
                 created_time: str = ""):
        self.id = id
        self.email = email
        self.full_name = full_name
        self.bio = bio
        self.avatar_url = avatar_url
        self.institute = institute
        self.course = course
        self.stream = stream
        self.interests = interests or []
        self.last_qualification = last_qualification
        self.aim = aim
        self.study_hours = study_hours
        self.preferred_content = preferred_content
        self.profile_completion = profile_completion
        self.donor_verified = donor_verified
        self.donor_amount = donor_amount
        self.donor_at = donor_at
        self.created_time = created_time

    def completion_percent(self) -> int:
        filled = 0
        for field in COMPLETION_FIELDS:
            value = getattr(self, field)
            if isinstance(value, list):
                filled += 1 if value else 0
            elif value is not None and str(value).strip():
                filled += 1
        return round(filled / len(COMPLETION_FIELDS) * 100)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise with the camelCase keys the web client expects."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "bio": self.bio,
            "avatar_url": self.avatar_url,
            "institute": self.institute,
            "course": self.course,
            "stream": self.stream,
            "interests": list(self.interests),
            "lastQualification": self.last_qualification,
            "aim": self.aim,
            "studyHours": self.study_hours,
            "preferredContent": self.preferred_content,
            "profileCompletion": self.profile_completion,
            "donorVerified": self.donor_verified,
            "donorAmount": self.donor_amount,
            "donorAt": self.donor_at,
            "created_time": self.created_time,
        }

class AuthError(Exception):
    """Raised when a request carries no valid session."""
    pass

class PermissionDenied(AuthError):
    """Raised when a signed-in user touches a record they do not own."""
    pass

class NotFoundError(ValueError):
    pass

class UploadTooLarge(ValueError):
    pass
