"""
Tests for the registration flow handlers.
"""
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest
from datetime import datetime, timedelta
from config import ANSWER_CALIBRATION_COUNT, MANTRA_CALIBRATION_COUNT, MANTRA_TEXT
from enroll_handlers import (
    RegistrationSession,
    RegistrationStep,
    _registration_sessions,
    cleanup_expired_sessions,
    register_answer,
    register_mantra,
    register_secret,
    register_start,
    validate_typed_attempt,
)
from schemas import (
    CalibrationSubmitRequest,
    KeystrokeEvent,
    RegisterStartRequest,
    SecretSetupRequest,
)
from memory_store import InMemoryUserStore
from sample_typing import as_events, robotic_keystrokes, typing_attempt


QUESTION = "What was the name of your first pet?"
ANSWER = "fluffy"


def events(keystrokes):
    return [KeystrokeEvent(**e) for e in as_events(keystrokes)]


def submission(token, keystrokes):
    return CalibrationSubmitRequest(session_token=token, keystrokes=events(keystrokes))


@pytest.fixture
def store():
    return InMemoryUserStore()


async def calibrate_mantra(token):
    response = None
    for attempt in range(MANTRA_CALIBRATION_COUNT):
        response = await register_mantra(submission(token, typing_attempt(MANTRA_TEXT, attempt=attempt)))
        assert response.accepted
    return response


async def register_user(store, username="alice"):
    start = await register_start(RegisterStartRequest(username=username), store)
    token = start.session_token
    await calibrate_mantra(token)
    register_secret(SecretSetupRequest(session_token=token, secret_question=QUESTION, secret_answer=ANSWER))

    response = None
    for attempt in range(ANSWER_CALIBRATION_COUNT):
        response = await register_answer(submission(token, typing_attempt(ANSWER, attempt=attempt)), store)
    return response


class TestValidateTypedAttempt:

    def test_exact_text(self):
        assert validate_typed_attempt(events(typing_attempt("abc")), "abc") == []

    def test_case_insensitive(self):
        assert validate_typed_attempt(events(typing_attempt("ABC")), "abc") == []

    def test_length_mismatch(self):
        assert validate_typed_attempt(events(typing_attempt("ab")), "abc") == ["LENGTH_MISMATCH"]

    def test_text_mismatch(self):
        assert validate_typed_attempt(events(typing_attempt("abd")), "abc") == ["TEXT_MISMATCH"]


class TestRegisterStart:

    @pytest.mark.asyncio
    async def test_start_returns_mantra(self, store):
        response = await register_start(RegisterStartRequest(username="alice"), store)
        assert response.mantra_text == MANTRA_TEXT
        assert response.required_samples == MANTRA_CALIBRATION_COUNT
        assert response.session_token in _registration_sessions

    @pytest.mark.asyncio
    async def test_short_username_rejected(self, store):
        with pytest.raises(ValueError):
            await register_start(RegisterStartRequest(username=" a "), store)

    @pytest.mark.asyncio
    async def test_abandoned_sessions_purged(self, store):
        """Starting a registration drops sessions that have expired."""
        stale = await register_start(RegisterStartRequest(username="alice"), store)
        live = await register_start(RegisterStartRequest(username="bob"), store)
        _registration_sessions[stale.session_token].expires_at = datetime.utcnow() - timedelta(minutes=1)

        fresh = await register_start(RegisterStartRequest(username="carol"), store)

        assert stale.session_token not in _registration_sessions
        assert live.session_token in _registration_sessions
        assert fresh.session_token in _registration_sessions

    def test_cleanup_reports_count(self):
        session = RegistrationSession(username="dave")
        session.expires_at = datetime.utcnow() - timedelta(seconds=1)
        _registration_sessions[session.session_token] = session

        assert cleanup_expired_sessions() >= 1
        assert session.session_token not in _registration_sessions

    @pytest.mark.asyncio
    async def test_taken_username_rejected(self, store):
        await register_user(store, "alice")
        with pytest.raises(ValueError):
            await register_start(RegisterStartRequest(username="ALICE"), store)


class TestMantraCalibration:

    @pytest.mark.asyncio
    async def test_attempts_counted_down(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        response = await register_mantra(submission(start.session_token, typing_attempt(MANTRA_TEXT, attempt=0)))

        assert response.accepted
        assert response.remaining == MANTRA_CALIBRATION_COUNT - 1
        assert response.step == RegistrationStep.MANTRA.value

    @pytest.mark.asyncio
    async def test_profile_built_after_last_attempt(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        response = await calibrate_mantra(start.session_token)

        assert response.step == RegistrationStep.SECRET_SETUP.value
        assert response.remaining == 0
        assert response.quality >= 30
        assert response.quality_label in ("excellent", "good", "acceptable", "poor")

        session = _registration_sessions[start.session_token]
        assert session.mantra_profile.sample_count == MANTRA_CALIBRATION_COUNT

    @pytest.mark.asyncio
    async def test_wrong_length_rejected(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        response = await register_mantra(submission(start.session_token, typing_attempt("the quick")))

        assert not response.accepted
        assert response.warnings == ["LENGTH_MISMATCH"]
        assert response.remaining == MANTRA_CALIBRATION_COUNT

    @pytest.mark.asyncio
    async def test_low_quality_restarts_calibration(self, store):
        """Very short, inconsistent timings are rejected and the attempts discarded."""
        start = await register_start(RegisterStartRequest(username="alice"), store)
        token = start.session_token

        response = None
        for j in range(MANTRA_CALIBRATION_COUNT):
            response = await register_mantra(
                submission(token, robotic_keystrokes(MANTRA_TEXT, dwell=25.0 + j, flight=15.0 + j))
            )

        assert not response.accepted
        assert response.warnings == ["LOW_PROFILE_QUALITY"]
        assert response.quality < 30
        assert response.remaining == MANTRA_CALIBRATION_COUNT
        assert response.step == RegistrationStep.MANTRA.value

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        response = await register_mantra(submission("missing", typing_attempt(MANTRA_TEXT)))
        assert not response.accepted
        assert response.warnings == ["invalid_session_token"]


class TestSecretSetup:

    @pytest.mark.asyncio
    async def test_secret_before_mantra_rejected(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        response = register_secret(SecretSetupRequest(
            session_token=start.session_token, secret_question=QUESTION, secret_answer=ANSWER
        ))
        assert not response.accepted
        assert "wrong_step" in response.warnings

    @pytest.mark.asyncio
    async def test_invalid_secret_rejected(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        await calibrate_mantra(start.session_token)

        response = register_secret(SecretSetupRequest(
            session_token=start.session_token, secret_question="  ", secret_answer="abc"
        ))
        assert not response.accepted
        assert response.warnings == ["EMPTY_QUESTION", "ANSWER_TOO_SHORT"]
        assert response.step == RegistrationStep.SECRET_SETUP.value

    @pytest.mark.asyncio
    async def test_valid_secret_accepted(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        await calibrate_mantra(start.session_token)

        response = register_secret(SecretSetupRequest(
            session_token=start.session_token, secret_question=QUESTION, secret_answer=ANSWER
        ))
        assert response.accepted
        assert response.step == RegistrationStep.ANSWER_CALIBRATION.value
        assert response.required_samples == ANSWER_CALIBRATION_COUNT


class TestAnswerCalibration:

    @pytest.mark.asyncio
    async def test_full_registration_persists_user(self, store):
        response = await register_user(store, "alice")

        assert response.accepted
        assert response.step == RegistrationStep.COMPLETE.value
        assert response.user_id

        user = await store.get_user(response.user_id)
        assert user.username == "alice"
        assert user.secret_question == QUESTION
        assert user.secret_answer == ANSWER
        assert user.mantra_profile.target_text == MANTRA_TEXT
        assert user.answer_profile.text_length == len(ANSWER)
        assert user.answer_profile.sample_count == ANSWER_CALIBRATION_COUNT

    @pytest.mark.asyncio
    async def test_session_closed_after_registration(self, store):
        start = await register_start(RegisterStartRequest(username="bob"), store)
        token = start.session_token
        await calibrate_mantra(token)
        register_secret(SecretSetupRequest(session_token=token, secret_question=QUESTION, secret_answer=ANSWER))
        for attempt in range(ANSWER_CALIBRATION_COUNT):
            await register_answer(submission(token, typing_attempt(ANSWER, attempt=attempt)), store)

        assert token not in _registration_sessions

    @pytest.mark.asyncio
    async def test_wrong_answer_text_rejected(self, store):
        start = await register_start(RegisterStartRequest(username="alice"), store)
        token = start.session_token
        await calibrate_mantra(token)
        register_secret(SecretSetupRequest(session_token=token, secret_question=QUESTION, secret_answer=ANSWER))

        response = await register_answer(submission(token, typing_attempt("floppy")), store)
        assert not response.accepted
        assert response.warnings == ["TEXT_MISMATCH"]
        assert response.remaining == ANSWER_CALIBRATION_COUNT
