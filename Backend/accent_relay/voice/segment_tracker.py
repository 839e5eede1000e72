"""Turn raw transcription events into incremental text deltas."""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

from accent_relay.core.logging import get_logger
from accent_relay.voice.audio_models import TextDelta, TranscriptSegment
from accent_relay.voice.settings import VoiceSettings
from accent_relay.voice.transcript_diff import extract_new_content, tokenize, transcript_fingerprint

logger = get_logger(__name__)


@dataclass
class SegmentState:
    previous_interim_text: str = ""
    cumulative_sent_text: str = ""
    is_initial_phase_complete: bool = False
    completed_segment_ids: Deque[str] = field(default_factory=lambda: deque(maxlen=10))
    last_event_time: float | None = None

    def reset(self) -> None:
        """Prepare for the next utterance; the dedup window survives."""
        self.previous_interim_text = ""
        self.cumulative_sent_text = ""
        self.is_initial_phase_complete = False


class SegmentTracker:
    """Segment state machine for one call.

    The first fragment of an utterance is emitted whole to keep time to
    first audio low. Later interims are diffed against what was already
    sent and a final result closes the segment. Duplicate finals are
    recognised by fingerprint within a small window.
    """

    def __init__(
        self,
        call_id: str,
        *,
        min_final_confidence: float = 0.7,
        min_initial_words: int = 1,
        speech_pause_seconds: float = 2.0,
        dedup_window: int = 10,
        cumulative_tracking: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.call_id = call_id
        self.min_final_confidence = min_final_confidence
        self.min_initial_words = max(1, min_initial_words)
        self.speech_pause_seconds = speech_pause_seconds
        self.cumulative_tracking = cumulative_tracking
        self._clock = clock
        self.state = SegmentState(completed_segment_ids=deque(maxlen=max(1, dedup_window)))

    @classmethod
    def from_settings(
        cls,
        call_id: str,
        settings: VoiceSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SegmentTracker":
        return cls(
            call_id,
            min_final_confidence=settings.min_final_confidence,
            min_initial_words=settings.min_initial_words,
            speech_pause_seconds=settings.speech_pause_seconds,
            dedup_window=settings.dedup_window,
            cumulative_tracking=settings.cumulative_tracking,
            clock=clock,
        )

    @property
    def is_active(self) -> bool:
        state = self.state
        return state.is_initial_phase_complete or bool(state.previous_interim_text)

    def process(self, segment: TranscriptSegment, now: Optional[float] = None) -> Optional[TextDelta]:
        """Feed one transcription event; return the delta to synthesize, if any."""
        text = (segment.text or "").strip()
        if not text:
            return None

        self.state.last_event_time = self._clock() if now is None else now
        if segment.is_final:
            return self._finalize(text, segment.confidence)
        return self._interim(text)

    def check_pause(self, now: Optional[float] = None) -> bool:
        """End the active segment after a pause without transcription events.

        Returns ``True`` when the segment was reset.
        """
        state = self.state
        if not self.is_active or state.last_event_time is None:
            return False
        now = self._clock() if now is None else now
        if now - state.last_event_time <= self.speech_pause_seconds:
            return False

        logger.debug(
            {
                "event": "segment_pause_detected",
                "call_id": self.call_id,
                "silence_seconds": round(now - state.last_event_time, 3),
            }
        )
        state.reset()
        return True

    def reset(self) -> None:
        self.state.reset()

    def _interim(self, text: str) -> Optional[TextDelta]:
        state = self.state
        if not state.is_initial_phase_complete:
            state.previous_interim_text = text
            if len(tokenize(text)) < self.min_initial_words:
                return None
            state.is_initial_phase_complete = True
            state.cumulative_sent_text = text
            return TextDelta(text=text, is_final=False)

        baseline = state.cumulative_sent_text if self.cumulative_tracking else state.previous_interim_text
        delta = extract_new_content(text, baseline)
        state.previous_interim_text = text
        if not delta.strip():
            return None

        state.cumulative_sent_text = text
        return TextDelta(text=delta, is_final=False)

    def _finalize(self, text: str, confidence: float | None) -> Optional[TextDelta]:
        state = self.state
        if confidence is not None and confidence < self.min_final_confidence:
            logger.info(
                {
                    "event": "segment_final_rejected",
                    "call_id": self.call_id,
                    "confidence": confidence,
                    "threshold": self.min_final_confidence,
                }
            )
            # Keep the text as sent so the next final does not repeat it.
            state.cumulative_sent_text = text
            state.previous_interim_text = text
            return None

        fingerprint = transcript_fingerprint(text)
        if fingerprint in state.completed_segment_ids:
            logger.debug({"event": "segment_final_duplicate", "call_id": self.call_id, "fingerprint": fingerprint})
            return None

        delta = extract_new_content(text, state.cumulative_sent_text)
        state.completed_segment_ids.append(fingerprint)
        state.reset()
        if not delta.strip():
            return None
        return TextDelta(text=delta, is_final=True)
