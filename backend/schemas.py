"""
Pydantic schemas for request/response validation.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict

from keystroke_features import RawKeystroke


class KeystrokeEvent(BaseModel):
    """One captured key press/release, times in milliseconds."""
    char: str = Field(..., min_length=1, max_length=4)
    code: str = Field(default="", max_length=64)
    key_down_time: float
    key_up_time: float

    def to_raw(self) -> RawKeystroke:
        return RawKeystroke(
            char=self.char,
            code=self.code,
            key_down_time=self.key_down_time,
            key_up_time=self.key_up_time,
        )


class LivenessInfo(BaseModel):
    is_human: bool
    score: float
    flags: List[str]


class MatchInfo(BaseModel):
    """Match breakdown returned to the presentation layer."""
    distance: float
    confidence: int
    dwell_score: float
    flight_score: float
    dd_score: float
    weights: Dict[str, float]
    liveness: LivenessInfo


class CheckUsernameRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)


class CheckUsernameResponse(BaseModel):
    exists: bool


class UserSummary(BaseModel):
    """Public view of a stored user, without profiles or secrets."""
    id: str
    username: str
    secret_question: str
    mantra_quality: int
    answer_quality: int
    created_at: str
    last_login: Optional[str] = None


class RegisterStartRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("username cannot be empty")
        return v


class RegisterStartResponse(BaseModel):
    session_token: str
    mantra_text: str
    required_samples: int


class CalibrationSubmitRequest(BaseModel):
    """One calibration typing during registration."""
    session_token: str
    keystrokes: List[KeystrokeEvent]


class CalibrationSubmitResponse(BaseModel):
    accepted: bool
    remaining: int
    warnings: List[str]
    step: str
    quality: Optional[int] = None
    quality_label: Optional[str] = None
    user_id: Optional[str] = None


class SecretSetupRequest(BaseModel):
    session_token: str
    secret_question: str = Field(..., max_length=200)
    secret_answer: str = Field(..., max_length=100)


class SecretSetupResponse(BaseModel):
    accepted: bool
    warnings: List[str]
    step: str
    required_samples: int


class LoginStartRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)


class LoginStartResponse(BaseModel):
    session_token: str
    username: str
    mantra_text: str
    state: str


class LoginSubmitRequest(BaseModel):
    session_token: str
    keystrokes: List[KeystrokeEvent]


class LoginSubmitResponse(BaseModel):
    """Response after one authentication stage."""
    state: str  # GRANTED | DENIED | AWAITING_CHALLENGE_INPUT
    confidence: Optional[int] = None
    reasons: List[str]
    mantra_match: Optional[MatchInfo] = None
    answer_match: Optional[MatchInfo] = None
    combined_distance: Optional[float] = None
    secret_question: Optional[str] = None
