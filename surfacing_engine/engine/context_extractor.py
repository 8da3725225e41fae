"""Turn a raw interaction event into a structured :class:`Context`."""

from __future__ import annotations

import logging
import re
import unicodedata as _ud
from collections.abc import Iterable, Mapping
from typing import Final

from surfacing_engine.core.interfaces import IdentityResolver
from surfacing_engine.core.models import (
    Context,
    ContextSignals,
    IntentClass,
    InteractionEvent,
    Platform,
    Signal,
    UserIdentity,
    WorkflowStage,
)
from surfacing_engine.settings import ContextConfig, StitchConfig
from surfacing_engine.utils.blake import stable_digest
from surfacing_engine.utils.exceptions import InvalidFeedbackEvent, UnknownPlatform, UnknownUser

log = logging.getLogger(__name__)

# --- Platform aliases ------------------------------------------------------

PLATFORM_ALIASES: Final[Mapping[str, Platform]] = {
    "slack": Platform.SLACK,
    "email": Platform.EMAIL,
    "mail": Platform.EMAIL,
    "outlook": Platform.EMAIL,
    "gmail": Platform.EMAIL,
    "form": Platform.FORM,
    "forms": Platform.FORM,
    "typeform": Platform.FORM,
    "google-forms": Platform.FORM,
    "procurement-form": Platform.FORM,
    "browser": Platform.BROWSER,
    "chrome": Platform.BROWSER,
    "firefox": Platform.BROWSER,
    "edge": Platform.BROWSER,
    "safari": Platform.BROWSER,
    "other": Platform.OTHER,
}
UNRECOGNIZED_PLATFORM_CONFIDENCE: Final[float] = 0.5

# --- Trigger dictionaries --------------------------------------------------

STRONG: Final[float] = 0.9
WEAK: Final[float] = 0.45

INTENT_TRIGGERS: Final[Mapping[IntentClass, Mapping[float, tuple[str, ...]]]] = {
    IntentClass.INFORMATION_SEEKING: {
        STRONG: ("what is", "where can i find", "how do i", "how can i", "who is", "tell me about"),
        WEAK: ("what", "where", "info", "information", "find", "explain", "details"),
    },
    IntentClass.TASK_EXECUTION: {
        STRONG: ("submit", "get approved", "file a", "set up", "create a", "book a", "order a"),
        WEAK: ("approve", "approval", "process", "purchase", "buy", "onboard", "expense", "register"),
    },
    IntentClass.ACCESS_REQUEST: {
        STRONG: ("need access", "request access", "grant me", "permission to", "access to"),
        WEAK: ("access", "permission", "permissions", "login", "credentials", "account"),
    },
    IntentClass.POLICY_CLARIFICATION: {
        STRONG: ("am i allowed", "is it allowed", "what is the policy", "policy on", "policy for"),
        WEAK: ("policy", "rule", "rules", "allowed", "compliance", "guideline", "limit"),
    },
    IntentClass.TROUBLESHOOTING: {
        STRONG: ("not working", "doesn't work", "does not work", "can't log", "cannot log", "keeps failing"),
        WEAK: ("error", "issue", "problem", "fail", "failed", "bug", "crash", "broken", "fix"),
    },
}

URGENCY_MARKERS: Final[Mapping[str, float]] = {
    "urgent": 0.9,
    "urgently": 0.9,
    "asap": 0.9,
    "as soon as possible": 0.9,
    "emergency": 0.9,
    "immediately": 0.8,
    "right now": 0.8,
    "critical": 0.7,
    "eod": 0.7,
    "end of day": 0.7,
    "deadline": 0.6,
    "today": 0.6,
    "tonight": 0.6,
    "by tomorrow": 0.5,
}
ACRONYM_MAX_LEN: Final[int] = 3

URGENCY_HIGH: Final[float] = 0.7
URGENCY_MEDIUM: Final[float] = 0.4

_FINGERPRINT_RX: Final[re.Pattern[str]] = re.compile(
    r"^(?P<platform>" + "|".join(p.value for p in Platform) + r")\.(?P<digest>[0-9a-f]{16})$"
)

# --- Helpers ---------------------------------------------------------------


def _normalize(text: str) -> str:
    return " ".join(_ud.normalize("NFKC", text).lower().split())


def _phrase_regex(phrase: str) -> re.Pattern[str]:
    return re.compile(r"(?<![\w'])" + re.escape(phrase) + r"(?![\w'])")


def _noisy_or(weights: Iterable[float]) -> float:
    miss = 1.0
    for w in weights:
        miss *= 1.0 - w
    return 1.0 - miss


_INTENT_RX: Final[dict[IntentClass, list[tuple[re.Pattern[str], float]]]] = {
    intent: [(_phrase_regex(p), w) for w, phrases in groups.items() for p in phrases]
    for intent, groups in INTENT_TRIGGERS.items()
}
_URGENCY_RX: Final[list[tuple[re.Pattern[str], float]]] = [
    (_phrase_regex(p), w) for p, w in URGENCY_MARKERS.items()
]


def context_fingerprint(platform: Platform, user_id: str, normalized_input: str) -> str:
    """Stable ``<platform>.<digest>`` token identifying an interaction context."""
    return f"{platform.value}.{stable_digest(platform.value, user_id, normalized_input, length=8)}"


def parse_fingerprint(fingerprint: str) -> Platform:
    """Return the platform encoded in ``fingerprint`` or raise ``InvalidFeedbackEvent``."""
    match = _FINGERPRINT_RX.match(fingerprint or "")
    if match is None:
        raise InvalidFeedbackEvent("malformed_fingerprint", repr(fingerprint))
    return Platform(match.group("platform"))


class ContextExtractor:
    """
    Deterministic feature extraction for one interaction.

    Apart from the identity lookup the extractor is a pure function of its
    inputs.  ``UnknownPlatform`` and ``UnknownUser`` are recovered here by
    degrading to the most conservative defaults.
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        stitch: StitchConfig | None = None,
    ) -> None:
        self.config = config or ContextConfig()
        self.stitch = stitch or StitchConfig()
        self._multi_step_rx = [re.compile(p, re.IGNORECASE) for p in self.stitch.multi_step_patterns]
        self._multi_step_intents = frozenset(self.stitch.multi_step_intents)
        # Short names are acronyms ("IT", "HR") and only count when written in
        # capitals, so the pronoun "it" never reads as a department mention.
        self._department_rx = {
            dept.lower(): (
                _phrase_regex(dept.upper()) if len(dept) <= ACRONYM_MAX_LEN else _phrase_regex(dept.lower())
            )
            for dept in self.config.departments
        }

    # -- individual signals -------------------------------------------------

    @staticmethod
    def detect_platform(event: InteractionEvent) -> Signal:
        raw = event.platform or event.metadata.get("app") or event.metadata.get("platform")
        if not raw or not str(raw).strip():
            raise UnknownPlatform("interaction carries no platform metadata")
        key = str(raw).strip().lower()
        platform = PLATFORM_ALIASES.get(key)
        if platform is None:
            return Signal(Platform.OTHER.value, UNRECOGNIZED_PLATFORM_CONFIDENCE)
        return Signal(platform.value, 1.0)

    def classify_intent(self, text: str) -> Signal:
        best = IntentClass.OTHER
        best_conf = 0.0
        # Dict order is taxonomy order; strict ``>`` keeps the earlier class on ties.
        for intent, patterns in _INTENT_RX.items():
            conf = _noisy_or(w for rx, w in patterns if rx.search(text))
            if conf > best_conf:
                best, best_conf = intent, conf
        if best_conf < self.config.intent_floor:
            return Signal(IntentClass.OTHER.value, 0.0)
        return Signal(best.value, round(best_conf, 6))

    @staticmethod
    def detect_urgency(text: str) -> Signal:
        score = round(_noisy_or(w for rx, w in _URGENCY_RX if rx.search(text)), 6)
        if score >= URGENCY_HIGH:
            level = "high"
        elif score >= URGENCY_MEDIUM:
            level = "medium"
        else:
            level = "low"
        return Signal(level, score)

    def detect_workflow_stage(self, text: str, intent: Signal) -> Signal:
        if any(rx.search(text) for rx in self._multi_step_rx):
            return Signal(WorkflowStage.MULTI_STEP.value, 0.9)
        if intent.value in self._multi_step_intents:
            return Signal(WorkflowStage.MULTI_STEP.value, round(0.6 * intent.confidence, 6))
        return Signal(WorkflowStage.SINGLE_STEP.value, 0.8)

    def mentioned_departments(self, raw_input: str) -> frozenset[str]:
        folded = _ud.normalize("NFKC", raw_input)
        lowered = _normalize(raw_input)
        return frozenset(
            d
            for d, rx in self._department_rx.items()
            if rx.search(folded if len(d) <= ACRONYM_MAX_LEN else lowered)
        )

    @staticmethod
    async def resolve_identity(user_id: str, identity: IdentityResolver) -> UserIdentity:
        try:
            return await identity.resolve_user(user_id)
        except UnknownUser:
            log.info("Unknown user; falling back to least-privileged subject")
            return UserIdentity.least_privileged(user_id)

    # -- composition --------------------------------------------------------

    def fingerprint(self, event: InteractionEvent) -> str:
        """Fingerprint ``event`` would get from :meth:`extract`, without lookups."""
        try:
            platform = Platform(self.detect_platform(event).value)
        except UnknownPlatform:
            platform = Platform.OTHER
        return context_fingerprint(platform, event.user_id, _normalize(event.raw_input))

    async def extract(self, event: InteractionEvent, identity: IdentityResolver) -> Context:
        try:
            app = self.detect_platform(event)
        except UnknownPlatform:
            log.info("Interaction without platform metadata; treating as 'other'")
            app = Signal(Platform.OTHER.value, 0.0)
        platform = Platform(app.value)
        text = _normalize(event.raw_input)
        user = await self.resolve_identity(event.user_id, identity)
        intent = self.classify_intent(text)
        signals = ContextSignals(
            app_detection=app,
            intent=intent,
            temporal_urgency=self.detect_urgency(text),
            workflow_stage=self.detect_workflow_stage(text, intent),
        )
        return Context(
            platform=platform,
            raw_input=event.raw_input,
            user=user,
            signals=signals,
            fingerprint=context_fingerprint(platform, event.user_id, text),
            mentioned_departments=self.mentioned_departments(event.raw_input),
        )


__all__ = [
    "PLATFORM_ALIASES",
    "ContextExtractor",
    "context_fingerprint",
    "parse_fingerprint",
]
