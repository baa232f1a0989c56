"""
Policy decision logic for keystroke rhythm authentication.

This module implements the two-stage decision:
- After the primary (mantra) match: GRANTED, DENIED or CHALLENGE
- After the secondary (secret answer) match: GRANTED or DENIED, final

and the state machine that walks one authentication session through it.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from config import DEFAULT_CONFIG, ScoringConfig
from keystroke_features import TimingVector
from scoring import MatchResult, calculate_match, distance_to_confidence

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Authentication decision types."""
    GRANTED = "GRANTED"
    DENIED = "DENIED"
    CHALLENGE = "CHALLENGE"


class AuthState(str, Enum):
    """States of one authentication session."""
    SELECT_SUBJECT = "SELECT_SUBJECT"
    AWAITING_PRIMARY_INPUT = "AWAITING_PRIMARY_INPUT"
    AWAITING_CHALLENGE_INPUT = "AWAITING_CHALLENGE_INPUT"
    GRANTED = "GRANTED"
    DENIED = "DENIED"


TERMINAL_STATES = {AuthState.GRANTED, AuthState.DENIED}


class InvalidTransitionError(RuntimeError):
    """Raised when input arrives in a state that does not accept it."""


@dataclass
class ChallengeOutcome:
    decision: Decision
    combined_distance: float
    combined_confidence: int
    reasons: List[str] = field(default_factory=list)


def decide_primary(match: MatchResult, config: ScoringConfig = DEFAULT_CONFIG) -> Dict[str, Any]:
    """
    Decide after the primary (mantra) match.

    Decision logic:
    - distance < accept AND confidence >= accept floor AND human → GRANTED
    - distance > reject OR confidence < challenge floor OR clear bot → DENIED
    - otherwise → CHALLENGE

    Returns:
        Dictionary containing decision and reason codes
    """
    reasons = []
    liveness = match.liveness

    if (
        match.distance < config.threshold_accept and
        match.confidence >= config.min_confidence_accept and
        liveness.is_human
    ):
        reasons.append("HIGH_CONFIDENCE")
        return {"decision": Decision.GRANTED, "reasons": reasons}

    if match.distance > config.threshold_reject:
        reasons.append("DISTANCE_TOO_HIGH")
    if match.confidence < config.min_confidence_challenge:
        reasons.append("LOW_CONFIDENCE")
    if not liveness.is_human and liveness.score < config.bot_reject_score:
        reasons.append("NOT_HUMAN")

    if reasons:
        return {"decision": Decision.DENIED, "reasons": reasons}

    reasons.append("MED_CONFIDENCE")
    if not liveness.is_human:
        reasons.append("LIVENESS_DOUBT")
    return {"decision": Decision.CHALLENGE, "reasons": reasons}


def decide_challenge(
    mantra_match: MatchResult,
    answer_match: MatchResult,
    config: ScoringConfig = DEFAULT_CONFIG
) -> ChallengeOutcome:
    """
    Decide after the secret answer challenge. The outcome is final.

    The mantra and answer distances are combined with fixed weights and
    the result must clear both the distance and confidence thresholds, with
    the answer attempt passing a relaxed liveness check.
    """
    weights = config.challenge_weights
    combined_distance = (
        mantra_match.distance * weights['mantra'] +
        answer_match.distance * weights['answer']
    )
    combined_confidence = distance_to_confidence(combined_distance)

    reasons = []
    if combined_distance >= config.challenge_threshold:
        reasons.append("DISTANCE_TOO_HIGH")
    if combined_confidence < config.min_confidence_challenge:
        reasons.append("LOW_CONFIDENCE")
    liveness = answer_match.liveness
    if not (liveness.is_human or liveness.score >= config.challenge_liveness_floor):
        reasons.append("NOT_HUMAN")

    decision = Decision.DENIED if reasons else Decision.GRANTED
    if not reasons:
        reasons.append("CHALLENGE_PASSED")

    return ChallengeOutcome(
        decision=decision,
        combined_distance=float(combined_distance),
        combined_confidence=combined_confidence,
        reasons=reasons,
    )


class AuthenticationFlow:
    """
    State machine for one authentication session.

    SELECT_SUBJECT → AWAITING_PRIMARY_INPUT → {GRANTED | DENIED |
    AWAITING_CHALLENGE_INPUT} → {GRANTED | DENIED}
    """

    def __init__(self, config: ScoringConfig = DEFAULT_CONFIG):
        self.config = config
        self.state = AuthState.SELECT_SUBJECT
        self.subject: Optional[Any] = None
        self.mantra_match: Optional[MatchResult] = None
        self.answer_match: Optional[MatchResult] = None
        self.challenge: Optional[ChallengeOutcome] = None
        self.reasons: List[str] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def confidence(self) -> Optional[int]:
        if self.challenge is not None:
            return self.challenge.combined_confidence
        if self.mantra_match is not None:
            return self.mantra_match.confidence
        return None

    def _expect(self, state: AuthState) -> None:
        if self.state != state:
            logger.warning(f"Rejected transition: expected {state.value}, in {self.state.value}")
            raise InvalidTransitionError(f"Expected state {state.value}, current state is {self.state.value}")

    def select_subject(self, subject: Any) -> AuthState:
        """Bind the user whose profiles the attempts are scored against."""
        self._expect(AuthState.SELECT_SUBJECT)
        self.subject = subject
        self.state = AuthState.AWAITING_PRIMARY_INPUT
        return self.state

    def submit_primary(self, match: MatchResult) -> AuthState:
        """Apply the primary decision to a mantra match."""
        self._expect(AuthState.AWAITING_PRIMARY_INPUT)
        self.mantra_match = match
        result = decide_primary(match, self.config)
        self.reasons = result["reasons"]

        if result["decision"] == Decision.GRANTED:
            self.state = AuthState.GRANTED
        elif result["decision"] == Decision.DENIED:
            self.state = AuthState.DENIED
        else:
            self.state = AuthState.AWAITING_CHALLENGE_INPUT
        return self.state

    def submit_challenge(self, match: MatchResult) -> AuthState:
        """Apply the final decision to a secret answer match."""
        self._expect(AuthState.AWAITING_CHALLENGE_INPUT)
        self.answer_match = match
        self.challenge = decide_challenge(self.mantra_match, match, self.config)
        self.reasons = self.challenge.reasons
        self.state = AuthState.GRANTED if self.challenge.decision == Decision.GRANTED else AuthState.DENIED
        return self.state

    def score_primary(self, timings: TimingVector, profile) -> AuthState:
        """Score mantra timings against a profile and apply the primary decision."""
        return self.submit_primary(calculate_match(timings, profile, self.config))

    def score_challenge(self, timings: TimingVector, profile) -> AuthState:
        """Score answer timings against a profile and apply the final decision."""
        return self.submit_challenge(calculate_match(timings, profile, self.config))
