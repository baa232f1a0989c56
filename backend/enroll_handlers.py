"""
Registration flow handlers for keystroke rhythm authentication.

Handles /register/start, /register/mantra, /register/secret and
/register/answer.
"""
import logging
import os
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from config import (
    ANSWER_CALIBRATION_COUNT,
    DEFAULT_CONFIG,
    MANTRA_CALIBRATION_COUNT,
    MANTRA_TEXT,
    MIN_ANSWER_LENGTH,
    MIN_USERNAME_LENGTH,
    ScoringConfig,
)
from db import UserProfile, UserStore, generate_user_id
from keystroke_features import CalibrationAttempt, extract_timings
from profile_builder import (
    BiometricProfile,
    InsufficientDataError,
    build_profile,
    get_quality_label,
    is_profile_acceptable,
)
from schemas import (
    CalibrationSubmitRequest, CalibrationSubmitResponse,
    KeystrokeEvent,
    RegisterStartRequest, RegisterStartResponse,
    SecretSetupRequest, SecretSetupResponse,
)

logger = logging.getLogger(__name__)

SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "60"))


class RegistrationStep(str, Enum):
    MANTRA = "MANTRA"
    SECRET_SETUP = "SECRET_SETUP"
    ANSWER_CALIBRATION = "ANSWER_CALIBRATION"
    COMPLETE = "COMPLETE"


# In-memory session storage
_registration_sessions: Dict[str, "RegistrationSession"] = {}


class RegistrationSession:
    """Manages a registration session for one new user."""

    def __init__(self, username: str, mantra_text: str = MANTRA_TEXT):
        self.session_token = str(uuid.uuid4())
        self.username = username
        self.mantra_text = mantra_text
        self.step = RegistrationStep.MANTRA
        self.mantra_attempts: List[CalibrationAttempt] = []
        self.answer_attempts: List[CalibrationAttempt] = []
        self.mantra_profile: Optional[BiometricProfile] = None
        self.secret_question = ""
        self.secret_answer = ""
        self.user_id: Optional[str] = None
        self.created_at = datetime.utcnow()
        self.expires_at = self.created_at + timedelta(minutes=SESSION_TTL_MINUTES)

    def is_expired(self) -> bool:
        """Check if session has expired."""
        return datetime.utcnow() > self.expires_at

    def get_remaining(self) -> int:
        """Get number of calibration samples still needed in the current step."""
        if self.step == RegistrationStep.MANTRA:
            return MANTRA_CALIBRATION_COUNT - len(self.mantra_attempts)
        if self.step == RegistrationStep.ANSWER_CALIBRATION:
            return ANSWER_CALIBRATION_COUNT - len(self.answer_attempts)
        return 0


def validate_typed_attempt(keystrokes: Sequence[KeystrokeEvent], target_text: str) -> List[str]:
    """
    Check that an attempt covers the target text exactly.

    Returns:
        List of issue codes (empty when valid)
    """
    issues = []
    if len(keystrokes) != len(target_text):
        issues.append("LENGTH_MISMATCH")
        return issues

    typed = "".join(k.char for k in keystrokes)
    if typed.lower() != target_text.lower():
        issues.append("TEXT_MISMATCH")
    return issues


def _get_session(token: str) -> Tuple[Optional[RegistrationSession], List[str]]:
    session = _registration_sessions.get(token)
    if not session:
        return None, ["invalid_session_token"]
    if session.is_expired():
        _registration_sessions.pop(token, None)
        return None, ["session_expired"]
    return session, []


def cleanup_expired_sessions() -> int:
    """Remove expired registration sessions from memory."""
    expired = [
        token for token, session in _registration_sessions.items()
        if session.is_expired()
    ]
    for token in expired:
        del _registration_sessions[token]
    if expired:
        logger.debug(f"Dropped {len(expired)} expired registration sessions")
    return len(expired)


def _rejected(session: Optional[RegistrationSession], warnings: List[str]) -> CalibrationSubmitResponse:
    return CalibrationSubmitResponse(
        accepted=False,
        remaining=session.get_remaining() if session else 0,
        warnings=warnings,
        step=session.step.value if session else "",
    )


async def register_start(request: RegisterStartRequest, store: UserStore) -> RegisterStartResponse:
    """
    Start registration for a new username.

    Raises:
        ValueError: If the username is too short or already taken
    """
    username = request.username.strip()
    if len(username) < MIN_USERNAME_LENGTH:
        raise ValueError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")

    if await store.username_exists(username):
        raise ValueError("Username already taken")

    cleanup_expired_sessions()
    session = RegistrationSession(username=username)
    _registration_sessions[session.session_token] = session

    return RegisterStartResponse(
        session_token=session.session_token,
        mantra_text=session.mantra_text,
        required_samples=MANTRA_CALIBRATION_COUNT,
    )


async def register_mantra(
    request: CalibrationSubmitRequest,
    config: ScoringConfig = DEFAULT_CONFIG
) -> CalibrationSubmitResponse:
    """
    Submit one mantra calibration attempt.

    Process:
    1. Validate session, step and typed text
    2. Extract timings and store the attempt
    3. After the required number of attempts, build the mantra profile
    4. Reject a low-quality profile and restart mantra calibration
    """
    session, warnings = _get_session(request.session_token)
    if not session:
        return _rejected(None, warnings)

    if session.step != RegistrationStep.MANTRA:
        return _rejected(session, ["wrong_step"])

    issues = validate_typed_attempt(request.keystrokes, session.mantra_text)
    if issues:
        return _rejected(session, issues)

    timings = extract_timings([k.to_raw() for k in request.keystrokes])
    session.mantra_attempts.append(CalibrationAttempt(timings=timings))

    if len(session.mantra_attempts) < MANTRA_CALIBRATION_COUNT:
        return CalibrationSubmitResponse(
            accepted=True,
            remaining=session.get_remaining(),
            warnings=warnings,
            step=session.step.value,
        )

    try:
        profile = build_profile(session.mantra_attempts, session.mantra_text, config)
    except InsufficientDataError as e:
        logger.warning(f"Mantra profile build failed for {session.username}: {e}")
        session.mantra_attempts = []
        return _rejected(session, ["PROFILE_BUILD_FAILED"])

    if not is_profile_acceptable(profile, config):
        logger.warning(
            f"Mantra profile for {session.username} rejected: quality {profile.quality} "
            f"< {config.min_profile_quality}"
        )
        session.mantra_attempts = []
        return CalibrationSubmitResponse(
            accepted=False,
            remaining=session.get_remaining(),
            warnings=["LOW_PROFILE_QUALITY"],
            step=session.step.value,
            quality=profile.quality,
            quality_label=get_quality_label(profile.quality),
        )

    session.mantra_profile = profile
    session.step = RegistrationStep.SECRET_SETUP

    return CalibrationSubmitResponse(
        accepted=True,
        remaining=0,
        warnings=warnings,
        step=session.step.value,
        quality=profile.quality,
        quality_label=get_quality_label(profile.quality),
    )


def register_secret(request: SecretSetupRequest) -> SecretSetupResponse:
    """Set the secret question and answer used for the challenge stage."""
    session, warnings = _get_session(request.session_token)
    if not session:
        return SecretSetupResponse(accepted=False, warnings=warnings, step="", required_samples=0)

    if session.step != RegistrationStep.SECRET_SETUP:
        warnings.append("wrong_step")
    question = request.secret_question.strip()
    answer = request.secret_answer.strip()
    if not question:
        warnings.append("EMPTY_QUESTION")
    if len(answer) < MIN_ANSWER_LENGTH:
        warnings.append("ANSWER_TOO_SHORT")

    if warnings:
        return SecretSetupResponse(
            accepted=False,
            warnings=warnings,
            step=session.step.value,
            required_samples=0,
        )

    session.secret_question = question
    session.secret_answer = answer
    session.step = RegistrationStep.ANSWER_CALIBRATION

    return SecretSetupResponse(
        accepted=True,
        warnings=[],
        step=session.step.value,
        required_samples=ANSWER_CALIBRATION_COUNT,
    )


async def register_answer(
    request: CalibrationSubmitRequest,
    store: UserStore,
    config: ScoringConfig = DEFAULT_CONFIG
) -> CalibrationSubmitResponse:
    """
    Submit one secret-answer calibration attempt.

    After the required number of attempts the answer profile is built and
    the user record is persisted.
    """
    session, warnings = _get_session(request.session_token)
    if not session:
        return _rejected(None, warnings)

    if session.step != RegistrationStep.ANSWER_CALIBRATION:
        return _rejected(session, ["wrong_step"])

    issues = validate_typed_attempt(request.keystrokes, session.secret_answer)
    if issues:
        return _rejected(session, issues)

    timings = extract_timings([k.to_raw() for k in request.keystrokes])
    session.answer_attempts.append(CalibrationAttempt(timings=timings))

    if len(session.answer_attempts) < ANSWER_CALIBRATION_COUNT:
        return CalibrationSubmitResponse(
            accepted=True,
            remaining=session.get_remaining(),
            warnings=warnings,
            step=session.step.value,
        )

    answer_profile = build_profile(session.answer_attempts, session.secret_answer, config)

    user = UserProfile(
        id=generate_user_id(),
        username=session.username,
        mantra_profile=session.mantra_profile,
        secret_question=session.secret_question,
        secret_answer=session.secret_answer,
        answer_profile=answer_profile,
        created_at=datetime.utcnow(),
    )
    # Uniqueness is re-checked by the store; a race loses here with ValueError.
    await store.create_user(user)

    session.user_id = user.id
    session.step = RegistrationStep.COMPLETE
    _registration_sessions.pop(session.session_token, None)

    return CalibrationSubmitResponse(
        accepted=True,
        remaining=0,
        warnings=warnings,
        step=session.step.value,
        quality=answer_profile.quality,
        quality_label=get_quality_label(answer_profile.quality),
        user_id=user.id,
    )
