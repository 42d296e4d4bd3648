"""
One streamed model response, reduced into a diagnosis.

A StreamTurn reads text chunks, re-runs the extractors on the whole buffer
after every chunk and commits the resulting DiagnosisRecord exactly once:
either on the first snapshot whose JSON block is closed, or after one final
extraction pass at end of stream.

Phases:
  IDLE -> STREAMING -> FINALIZING -> DONE
  any  -> FAILED     (stream error, or no usable diagnosis)
  any  -> CANCELLED  (turn cancelled or superseded before commit)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Set

from pydantic import ValidationError

from .errors import StreamError
from .models import DiagnosisRecord
from .parsing import extract_json, extract_reasoning, locate_json, parse_fragment, sniff_field

logger = logging.getLogger(__name__)

TRADE_FIELD = "trade"
NO_DIAGNOSIS_ERROR = "The response did not contain a diagnosis."


class TurnPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TurnState:
    buffer: str = ""
    reasoning: Optional[str] = None
    last_parsed: Optional[DiagnosisRecord] = None
    is_complete: bool = False
    early_trade_triggered: bool = False
    committed: bool = False
    phase: TurnPhase = TurnPhase.IDLE
    error: Optional[str] = None


@dataclass
class TurnResult:
    phase: TurnPhase
    record: Optional[DiagnosisRecord]
    reasoning: str
    text: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.phase is TurnPhase.DONE


CommitFn = Callable[[TurnResult], Awaitable[None]]
TradeFn = Callable[[str], Awaitable[None]]


def _to_record(data: dict) -> Optional[DiagnosisRecord]:
    try:
        return DiagnosisRecord.model_validate(data)
    except ValidationError:
        return None


class StreamTurn:
    def __init__(
        self,
        on_commit: CommitFn,
        on_trade: Optional[TradeFn] = None,
        trade_gate: Optional[Callable[[str], bool]] = None,
        on_reasoning: Optional[Callable[[str], None]] = None,
        on_record: Optional[Callable[[DiagnosisRecord, bool], None]] = None,
        is_current: Optional[Callable[[], bool]] = None,
        label: str = "turn",
    ):
        self.on_commit = on_commit
        self.on_trade = on_trade
        self.trade_gate = trade_gate
        self.on_reasoning = on_reasoning
        self.on_record = on_record
        self.is_current = is_current
        self.label = label
        self.state = TurnState()
        self.side_tasks: Set[asyncio.Task] = set()
        self._cancelled = False

    # ---------------- lifecycle ----------------
    def cancel(self) -> None:
        self._cancelled = True

    @property
    def active(self) -> bool:
        if self._cancelled:
            return False
        return self.is_current() if self.is_current else True

    def result(self) -> TurnResult:
        st = self.state
        return TurnResult(
            phase=st.phase,
            record=st.last_parsed,
            reasoning=st.reasoning or "",
            text=st.buffer,
            error=st.error,
        )

    # ---------------- per-snapshot work ----------------
    def feed(self, chunk: str) -> bool:
        """
        Append one chunk and re-extract. Runs to completion without awaiting.
        Returns True once the snapshot carries a closed, parseable JSON block.
        """
        st = self.state
        if st.phase is TurnPhase.IDLE:
            st.phase = TurnPhase.STREAMING
        st.buffer += chunk

        reasoning = extract_reasoning(st.buffer)
        if reasoning is not None and reasoning != st.reasoning:
            st.reasoning = reasoning
            if self.on_reasoning:
                self.on_reasoning(reasoning)

        fragment = locate_json(st.buffer)
        if fragment is None:
            return False

        if not st.early_trade_triggered:
            sniffed = sniff_field(fragment.text, TRADE_FIELD)
            if sniffed:
                self._trigger_trade(sniffed, "sniffed")

        data = parse_fragment(fragment)
        if data is None:
            return False
        record = _to_record(data)
        if record is None:
            return False

        # Each parse is the best full view so far; replace, never merge
        st.last_parsed = record
        st.is_complete = fragment.is_complete
        if record.is_valid and self.on_record:
            self.on_record(record, fragment.is_complete)
        if not st.early_trade_triggered and record.trade:
            self._trigger_trade(record.trade, "parsed")
        return fragment.is_complete and record.is_valid

    def _trigger_trade(self, trade: str, source: str) -> None:
        if self.on_trade is None or self.state.early_trade_triggered:
            return
        if self.trade_gate is not None and not self.trade_gate(trade):
            return
        self.state.early_trade_triggered = True
        logger.debug("%s: trade %s early: %s", self.label, source, trade)
        task = asyncio.ensure_future(self.on_trade(trade))
        self.side_tasks.add(task)
        task.add_done_callback(self._side_task_done)

    def _side_task_done(self, task: asyncio.Task) -> None:
        self.side_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("%s: trade workflow failed: %s", self.label, exc)

    # ---------------- commit ----------------
    async def finish(self) -> TurnResult:
        """End-of-stream pass. Safe to call more than once."""
        await self._finalize(final_pass=True)
        return self.result()

    async def _finalize(self, final_pass: bool) -> None:
        st = self.state
        if st.committed or st.phase in (TurnPhase.FAILED, TurnPhase.CANCELLED):
            return
        if not self.active:
            st.phase = TurnPhase.CANCELLED
            return
        st.phase = TurnPhase.FINALIZING

        if final_pass:
            extracted = extract_json(st.buffer, final=True)
            record = _to_record(extracted.data) if extracted else None
            if record is not None and record.is_valid:
                st.last_parsed = record
                if self.on_record:
                    self.on_record(record, True)
                if not st.early_trade_triggered and record.trade:
                    self._trigger_trade(record.trade, "final")
            st.is_complete = True

        record = st.last_parsed
        if record is None or not record.is_valid:
            st.phase = TurnPhase.FAILED
            st.error = NO_DIAGNOSIS_ERROR
            logger.info("%s: stream ended without a usable diagnosis (%d chars)", self.label, len(st.buffer))
            return

        st.committed = True
        logger.debug("%s: committing diagnosis %r", self.label, record.diagnosis)
        await self.on_commit(self.result())
        st.phase = TurnPhase.DONE

    # ---------------- driver ----------------
    async def run(self, chunks: AsyncIterator[str]) -> TurnResult:
        st = self.state
        closed_early = False
        try:
            async for chunk in chunks:
                if not self.active:
                    break
                if chunk and self.feed(chunk):
                    closed_early = True
                    break
        except StreamError as e:
            st.phase = TurnPhase.FAILED
            st.error = str(e)
            logger.warning("%s: stream failed after %d chars: %s", self.label, len(st.buffer), e)
            return self.result()
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        if not self.active:
            st.phase = TurnPhase.CANCELLED
            logger.debug("%s: cancelled, dropping result", self.label)
            return self.result()

        await self._finalize(final_pass=not closed_early)
        return self.result()
