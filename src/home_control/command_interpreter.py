"""
Command interpretation for the voice fast-path.

Matches a spoken utterance against the command catalog with literal
substring scoring:

1. Normalize (lowercase, trim, collapse whitespace).
2. Extract one qualifier. Appliance names are scanned first and win; only
   when none matches is a room name extracted. An utterance naming both a
   device and a room keeps the device only.
3. Score every phrase of every active command against the utterance with the
   qualifier text removed and the phrase placeholders removed:
   0.5 on a substring hit, +0.3 when a ``{room}`` phrase meets a room
   qualifier, +0.4 when a ``{device}`` phrase meets a device qualifier, and
   1.0 when the utterance is exactly the phrase with its placeholders filled.
4. Keep the first highest score; accept it only above the threshold.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from shared.models import DEVICE_PLACEHOLDER, ROOM_PLACEHOLDER, Command, Room

logger = structlog.get_logger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.4

BASE_SCORE = 0.5
ROOM_BONUS = 0.3
DEVICE_BONUS = 0.4
EXACT_SCORE = 1.0

_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", (text or "").lower()).strip()


@dataclass
class CommandMatch:
    """Best catalog match for one utterance."""
    command: Command
    phrase: str
    score: float
    room_qualifier: Optional[str] = None
    device_qualifier: Optional[str] = None

    @property
    def action_type(self) -> str:
        return self.command.action_type

    def to_dict(self) -> dict:
        return {
            'command': self.command.name,
            'action_type': self.command.action_type,
            'phrase': self.phrase,
            'score': self.score,
            'room_qualifier': self.room_qualifier,
            'device_qualifier': self.device_qualifier,
        }


def extract_qualifiers(utterance: str, rooms: List[Room]) -> Tuple[Optional[str], Optional[str]]:
    """
    Return ``(room_qualifier, device_qualifier)``; at most one is set.

    ``utterance`` must already be normalized.
    """
    for room in rooms:
        for appliance in room.appliances:
            name = normalize(appliance.name)
            if name and name in utterance:
                return None, name

    for room in rooms:
        name = normalize(room.name)
        if name and name in utterance:
            return name, None

    return None, None


def score_phrase(
    utterance: str,
    phrase: str,
    room_qualifier: Optional[str] = None,
    device_qualifier: Optional[str] = None
) -> float:
    """Score one catalog phrase against a normalized utterance."""
    phrase = normalize(phrase)
    has_room = ROOM_PLACEHOLDER in phrase
    has_device = DEVICE_PLACEHOLDER in phrase

    stripped_phrase = normalize(phrase.replace(ROOM_PLACEHOLDER, " ").replace(DEVICE_PLACEHOLDER, " "))
    if not stripped_phrase:
        return 0.0

    # Exact match only counts when every placeholder could be filled
    if (not has_room or room_qualifier) and (not has_device or device_qualifier):
        filled = phrase
        if has_room:
            filled = filled.replace(ROOM_PLACEHOLDER, room_qualifier)
        if has_device:
            filled = filled.replace(DEVICE_PLACEHOLDER, device_qualifier)
        if normalize(filled) == utterance:
            return EXACT_SCORE

    stripped_utterance = utterance
    for qualifier in (room_qualifier, device_qualifier):
        if qualifier:
            stripped_utterance = normalize(stripped_utterance.replace(qualifier, " "))

    if stripped_phrase not in stripped_utterance:
        return 0.0

    score = BASE_SCORE
    if has_room and room_qualifier:
        score += ROOM_BONUS
    if has_device and device_qualifier:
        score += DEVICE_BONUS
    return score


class CommandInterpreter:
    """Turns an utterance into the best matching catalog command, if any."""

    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD):
        self.threshold = threshold

    def interpret(
        self,
        utterance: str,
        rooms: List[Room],
        commands: List[Command]
    ) -> Optional[CommandMatch]:
        """
        Match an utterance against the catalog.

        Returns None when nothing scores above the threshold; that is an
        ordinary outcome the caller answers with a "didn't understand" reply.
        """
        text = normalize(utterance)
        if not text:
            return None

        room_qualifier, device_qualifier = extract_qualifiers(text, rooms)

        best: Optional[CommandMatch] = None
        for command in commands:
            if not command.is_active:
                continue
            for phrase in command.phrases:
                score = score_phrase(text, phrase, room_qualifier, device_qualifier)
                if score > 0 and (best is None or score > best.score):
                    best = CommandMatch(
                        command=command,
                        phrase=phrase,
                        score=score,
                        room_qualifier=room_qualifier,
                        device_qualifier=device_qualifier,
                    )

        if best is None or best.score <= self.threshold:
            logger.info(
                "command_not_matched",
                utterance=text,
                best_score=best.score if best else 0.0,
                room_qualifier=room_qualifier,
                device_qualifier=device_qualifier
            )
            return None

        logger.info(
            "command_matched",
            utterance=text,
            command=best.command.name,
            action_type=best.command.action_type,
            score=best.score,
            room_qualifier=room_qualifier,
            device_qualifier=device_qualifier
        )
        return best
