"""
Per-conversation controller.

    NO_IMAGE --start_diagnosis--> DIAGNOSING --ok--> HAS_DIAGNOSIS
                                      |                 |    ^
                                      +--fail--> FAILED  |    |
                                                 send_message / regenerate
                                                        v    |
                                                      RESPONDING

Only one turn may stream per conversation. The provider search started by a
turn runs as a side task and may finish after the turn does.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Callable, List, Optional, Set
from uuid import uuid4

import httpx

from .cache import PendingImageCache
from .config import FALLBACK_ADDRESS, MAX_ATTACHMENTS, STORE_READ_TIMEOUT
from .errors import LocationUnavailable, SessionError, TurnInProgressError
from .models import Conversation, DiagnosisRecord, Location, Message, Provider
from .store import ConversationStore
from .turn import StreamTurn, TurnPhase, TurnResult

logger = logging.getLogger(__name__)

_PROVIDER_QUESTION = re.compile(r"provider|contact|who", re.IGNORECASE)
FEEDBACK_VALUES = ("up", "down")


class SessionState(str, Enum):
    NO_IMAGE = "no_image"
    DIAGNOSING = "diagnosing"
    HAS_DIAGNOSIS = "has_diagnosis"
    RESPONDING = "responding"
    FAILED = "failed"


def _clean(s: Optional[str]) -> str:
    return " ".join((s or "").split()).lower()


def diagnosis_changed(previous: Optional[DiagnosisRecord], new: DiagnosisRecord) -> bool:
    """True when diagnosis or trade differ, ignoring case and whitespace."""
    prev_diagnosis = previous.diagnosis if previous else ""
    prev_trade = previous.trade if previous else ""
    return _clean(prev_diagnosis) != _clean(new.diagnosis) or _clean(prev_trade) != _clean(new.trade)


class DiagnosticSession:
    def __init__(
        self,
        conversation_id: str,
        diagnoser,
        store: ConversationStore,
        provider_search,
        geocoder,
        geolocator,
        image_cache: Optional[PendingImageCache] = None,
        notify: Optional[Callable[[str], None]] = None,
        on_event: Optional[Callable[[str, Any], None]] = None,
    ):
        self.conversation = Conversation(id=conversation_id)
        self.diagnoser = diagnoser
        self.store = store
        self.provider_search = provider_search
        self.geocoder = geocoder
        self.geolocator = geolocator
        self.image_cache = image_cache
        self.notify = notify
        self.on_event = on_event

        self.state = SessionState.NO_IMAGE
        self._diagnosis_started = False
        self._turn_token: Optional[str] = None
        self._active_turn: Optional[StreamTurn] = None
        self._side_tasks: Set[asyncio.Task] = set()

    # ---------------- accessors ----------------
    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    @property
    def diagnosis(self) -> Optional[DiagnosisRecord]:
        return self.conversation.diagnosis

    @property
    def providers(self) -> List[Provider]:
        return self.conversation.providers

    @property
    def location(self) -> Optional[Location]:
        return self.conversation.location

    def _emit(self, kind: str, payload: Any) -> None:
        if self.on_event:
            self.on_event(kind, payload)

    def _report(self, text: str) -> None:
        logger.info("session[%s]: %s", self.id, text)
        if self.notify:
            self.notify(text)

    # ---------------- loading ----------------
    async def load(self) -> List[Message]:
        """Restore the conversation from the pending-image cache and the store."""
        pending = self.image_cache.get(self.id) if self.image_cache else None
        if pending:
            logger.debug("session[%s]: image found in pending cache", self.id)
            self.conversation.image_url = pending.data_url

        stored = None
        try:
            stored = await asyncio.wait_for(self.store.select(self.id), timeout=STORE_READ_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("session[%s]: store read timed out after %.1fs", self.id, STORE_READ_TIMEOUT)
        except Exception as e:
            logger.warning("session[%s]: failed to load conversation: %s", self.id, e)

        if stored is not None:
            conv = self.conversation
            conv.title = stored.title
            conv.image_url = stored.image_url or conv.image_url
            conv.diagnosis = stored.diagnosis
            conv.reasoning = stored.reasoning
            conv.providers = list(stored.providers)
            conv.location = stored.location
            conv.messages = list(stored.messages)
            conv.created_at = stored.created_at

        if self.image_cache and self.conversation.messages:
            self.image_cache.clear()

        if self.conversation.diagnosis is not None and self.conversation.diagnosis.is_valid:
            self.state = SessionState.HAS_DIAGNOSIS
            self._diagnosis_started = True
            loc = self.conversation.location
            if loc and self.conversation.diagnosis.trade and not self.conversation.providers:
                logger.debug("session[%s]: re-fetching providers for %s", self.id, self.conversation.diagnosis.trade)
                self._spawn(self._search_providers(loc.lat, loc.lng, self.conversation.diagnosis.trade))
        return self.conversation.messages

    def set_image(self, data_url: str) -> None:
        if self.state is not SessionState.NO_IMAGE:
            raise SessionError("Image can only be set before diagnosis starts")
        self.conversation.image_url = data_url

    # ---------------- turns ----------------
    def _require_ready(self) -> None:
        if self.state in (SessionState.DIAGNOSING, SessionState.RESPONDING):
            raise TurnInProgressError(f"A response is already streaming for {self.id}")
        if self.state is not SessionState.HAS_DIAGNOSIS:
            raise SessionError("No diagnosis yet")

    def _begin_turn(self, label: str, on_commit, trade_gate) -> StreamTurn:
        token = uuid4().hex
        self._turn_token = token
        turn = StreamTurn(
            on_commit=on_commit,
            on_trade=self._locate_and_search,
            trade_gate=trade_gate,
            on_reasoning=lambda text: self._emit("reasoning", text),
            on_record=lambda record, complete: self._emit("partial", record),
            is_current=lambda: self._turn_token == token,
            label=f"{label}[{token[:8]}]",
        )
        self._active_turn = turn
        return turn

    async def _run_turn(self, turn: StreamTurn, payload: dict) -> TurnResult:
        try:
            return await turn.run(self.diagnoser.stream(payload))
        finally:
            for task in turn.side_tasks:
                self._track(task)
            if self._active_turn is turn:
                self._active_turn = None

    def _should_search(self, trade: str, previous: Optional[DiagnosisRecord], user_text: str = "") -> bool:
        if not self.conversation.providers:
            return True
        if previous is None or _clean(previous.trade) != _clean(trade):
            return True
        return bool(_PROVIDER_QUESTION.search(user_text or ""))

    async def start_diagnosis(self) -> Optional[TurnResult]:
        """Run the initial diagnosis once; repeated calls are ignored."""
        if self._diagnosis_started:
            logger.debug("session[%s]: diagnosis already started, ignoring", self.id)
            return None
        image = self.conversation.image_url
        if not image:
            raise SessionError("No image to diagnose")
        self._diagnosis_started = True
        self.state = SessionState.DIAGNOSING
        self.conversation.diagnosis = None
        logger.info("session[%s]: starting initial diagnosis (image %d chars)", self.id, len(image))

        await self._persist_conversation()

        async def commit(result: TurnResult) -> None:
            record = result.record
            content = record.message or f"I identified a {record.diagnosis}."
            await self._commit(result, Message(role="assistant", content=content))

        turn = self._begin_turn("diagnose", commit, lambda trade: self._should_search(trade, None))
        result = await self._run_turn(turn, {"image": image})

        if result.ok:
            self.state = SessionState.HAS_DIAGNOSIS
        elif result.phase is TurnPhase.CANCELLED:
            # A new upload may follow; it gets its own initial turn
            self._diagnosis_started = False
            self.state = SessionState.NO_IMAGE
        else:
            self.state = SessionState.FAILED
            self._report(f"Diagnosis failed: {result.error}")
        return result

    async def retry_diagnosis(self) -> Optional[TurnResult]:
        if self.state is not SessionState.FAILED:
            raise SessionError("Only a failed diagnosis can be retried")
        self._diagnosis_started = False
        self.state = SessionState.NO_IMAGE
        return await self.start_diagnosis()

    async def send_message(self, content: str, attachments: Optional[List[str]] = None) -> TurnResult:
        self._require_ready()
        content = (content or "").strip()
        attachments = list(attachments or [])[:MAX_ATTACHMENTS]
        if not content and not attachments:
            raise SessionError("Nothing to send")
        self.state = SessionState.RESPONDING
        try:
            user_msg = Message(role="user", content=content, attachments=attachments)
            self.conversation.messages.append(user_msg)
            self._emit("message", user_msg)
            await self._persist_message(user_msg)
            return await self._respond(list(self.conversation.messages), content, replace_at=None)
        finally:
            self.state = SessionState.HAS_DIAGNOSIS

    async def regenerate(self, index: int) -> TurnResult:
        """Re-answer from the history before ``index``, replacing that answer."""
        self._require_ready()
        msgs = self.conversation.messages
        if not 0 <= index < len(msgs) or msgs[index].role != "assistant":
            raise SessionError(f"No assistant message at {index}")
        history = msgs[:index]
        last_user = next((m for m in reversed(history) if m.role == "user"), None)
        if last_user is None:
            raise SessionError("Nothing to regenerate from")
        self.state = SessionState.RESPONDING
        try:
            return await self._respond(history, last_user.content, replace_at=index)
        finally:
            self.state = SessionState.HAS_DIAGNOSIS

    async def _respond(self, history: List[Message], user_text: str, replace_at: Optional[int]) -> TurnResult:
        previous = self.conversation.diagnosis

        async def commit(result: TurnResult) -> None:
            record = result.record
            content = record.message or f"{record.diagnosis}\n\n{record.action_required}"
            changed = diagnosis_changed(previous, record)
            await self._commit(result, Message(role="assistant", content=content, has_updated_diagnosis=changed), replace_at)

        turn = self._begin_turn("respond", commit, lambda trade: self._should_search(trade, previous, user_text))
        result = await self._run_turn(turn, self._payload(history))
        if not result.ok and result.phase is not TurnPhase.CANCELLED:
            self._report(f"Failed to get response: {result.error}")
        return result

    def _payload(self, history: List[Message]) -> dict:
        items = []
        diagnosis = self.conversation.diagnosis
        if diagnosis is not None and diagnosis.is_valid:
            items.append({"role": "assistant", "content": diagnosis.summary(), "attachments": []})
        items.extend(m.for_history() for m in history)
        payload = {
            "image": self.conversation.image_url,
            "history": items,
            "providers": [p.model_dump(mode="json") for p in self.conversation.providers],
        }
        feedback = next((m.feedback for m in reversed(history) if m.role == "assistant"), None)
        if feedback:
            payload["feedback"] = feedback
        return payload

    async def _commit(self, result: TurnResult, message: Message, replace_at: Optional[int] = None) -> None:
        conv = self.conversation
        conv.diagnosis = result.record
        conv.reasoning = result.reasoning
        conv.title = result.record.diagnosis or conv.title
        if replace_at is None:
            conv.messages.append(message)
        else:
            conv.messages = conv.messages[:replace_at] + [message]
        self._emit("diagnosis", result.record)
        self._emit("message", message)

        await self._persist_conversation()
        if await self._persist_message(message) and self.image_cache:
            self.image_cache.clear()

    # ---------------- user actions ----------------
    def set_feedback(self, index: int, value: str) -> Optional[str]:
        msgs = self.conversation.messages
        if not 0 <= index < len(msgs):
            raise SessionError(f"No message at {index}")
        if value not in FEEDBACK_VALUES:
            raise SessionError(f"Unknown feedback {value!r}")
        msg = msgs[index]
        msg.feedback = None if msg.feedback == value else value
        self._emit("feedback", (index, msg.feedback))
        return msg.feedback

    def cancel(self) -> None:
        """Stop the streaming turn; its commit becomes a no-op."""
        self._turn_token = None
        if self._active_turn is not None:
            self._active_turn.cancel()

    async def drain(self) -> None:
        """Wait for outstanding provider searches."""
        pending = list(self._side_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ---------------- provider workflow ----------------
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        if task.done():
            return
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    async def _locate_and_search(self, trade: str) -> None:
        try:
            lat, lng = await self.geolocator.get_position()
        except LocationUnavailable as e:
            logger.warning("session[%s]: location unavailable: %s", self.id, e)
            self._report("Location access denied")
            return

        address, _ = await asyncio.gather(
            self._reverse_geocode(lat, lng),
            self._search_providers(lat, lng, trade),
        )
        self.conversation.location = Location(lat=lat, lng=lng, address=address)
        self._emit("location", self.conversation.location)
        await self._persist_conversation()

    async def _reverse_geocode(self, lat: float, lng: float) -> str:
        try:
            address = await self.geocoder.reverse(lat, lng)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("session[%s]: reverse geocode failed: %s", self.id, e)
            return FALLBACK_ADDRESS
        return address or FALLBACK_ADDRESS

    async def _search_providers(self, lat: float, lng: float, trade: str) -> Optional[List[Provider]]:
        try:
            providers = await self.provider_search.search(lat, lng, trade)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("session[%s]: provider search for %r failed: %s", self.id, trade, e)
            return None
        logger.debug("session[%s]: %d providers for %r", self.id, len(providers), trade)
        self.conversation.providers = providers
        self._emit("providers", providers)
        await self._persist_conversation()
        return providers

    # ---------------- persistence (best effort) ----------------
    async def _persist_conversation(self) -> bool:
        try:
            await self.store.upsert(self.conversation)
        except Exception as e:
            logger.error("session[%s]: error saving conversation: %s", self.id, e)
            return False
        return True

    async def _persist_message(self, message: Message) -> bool:
        try:
            await self.store.insert(self.id, message)
        except Exception as e:
            logger.error("session[%s]: error saving message: %s", self.id, e)
            return False
        return True
