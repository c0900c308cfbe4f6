"""CosyVoice duplex task protocol: message envelopes and the per-task driver."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from cosyvoice_bridge.api.service.logging_config import task_logger
from cosyvoice_bridge.api.service.pool import Message, SessionClosedError, UpstreamSession


ACTION_RUN_TASK = "run-task"
ACTION_CONTINUE_TASK = "continue-task"
ACTION_FINISH_TASK = "finish-task"

EVENT_TASK_STARTED = "task-started"
EVENT_TASK_FINISHED = "task-finished"
EVENT_TASK_FAILED = "task-failed"

EVENT_MARKER = '"event"'

logger = logging.getLogger(__name__)


@dataclass
class SynthesisParams:
    voice: str
    format: str
    sample_rate: int
    rate: float
    pitch: float
    volume: int


class TaskState(str, Enum):
    CREATED = "created"
    AWAITING_START = "awaiting-start"
    FEEDING = "feeding"
    AWAITING_FINISH = "awaiting-finish"
    FINISHED = "finished"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TaskState.FINISHED, TaskState.FAILED})
AUDIO_STATES = frozenset({TaskState.FEEDING, TaskState.AWAITING_FINISH})


class TaskListener(Protocol):
    def on_audio(self, chunk: bytes) -> None: ...

    def on_task_finished(self) -> None: ...

    def on_task_failed(self, code: Optional[str], message: Optional[str]) -> None: ...


def _header(action: str, task_id: str) -> Dict[str, str]:
    return {"action": action, "task_id": task_id, "streaming": "duplex"}


def build_run_task(task_id: str, model: str, params: SynthesisParams) -> Dict[str, Any]:
    return {
        "header": _header(ACTION_RUN_TASK, task_id),
        "payload": {
            "task_group": "audio",
            "task": "tts",
            "function": "SpeechSynthesizer",
            "model": model,
            "parameters": {
                "text_type": "PlainText",
                "voice": params.voice,
                "format": params.format,
                "sample_rate": params.sample_rate,
                "volume": params.volume,
                "rate": params.rate,
                "pitch": params.pitch,
            },
            "input": {},
        },
    }


def build_continue_task(task_id: str, text: str) -> Dict[str, Any]:
    return {"header": _header(ACTION_CONTINUE_TASK, task_id), "payload": {"input": {"text": text}}}


def build_finish_task(task_id: str) -> Dict[str, Any]:
    return {"header": _header(ACTION_FINISH_TASK, task_id), "payload": {"input": {}}}


def parse_event(raw: str) -> Optional[Dict[str, Any]]:
    """Return the envelope header of a control message, or ``None`` if it is not one."""

    if EVENT_MARKER not in raw:
        return None
    try:
        msg = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(msg, dict):
        return None
    header = msg.get("header")
    if not isinstance(header, dict) or not isinstance(header.get("event"), str):
        return None
    return header


class TaskProtocolDriver:
    """Drives one synthesis task over a leased session.

    ``run-task`` goes out on :meth:`start`. Text and ``finish-task`` follow as
    soon as the service acknowledges with ``task-started``. Binary frames are
    handed to the listener as they arrive between ``task-started`` and the
    terminal event. Audio outside that window belongs to an earlier task on the
    same session and is dropped.
    """

    def __init__(
        self,
        session: UpstreamSession,
        text: str,
        params: SynthesisParams,
        model: str,
        listener: TaskListener,
        task_id: Optional[str] = None,
    ) -> None:
        self.session = session
        self.text = text
        self.params = params
        self.model = model
        self.listener = listener
        self.task_id = task_id or str(uuid.uuid4())
        self.state = TaskState.CREATED
        self.log = task_logger(logger, self.task_id, session.id)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def finished(self) -> bool:
        return self.state is TaskState.FINISHED

    async def _send(self, envelope: Dict[str, Any]) -> None:
        await self.session.send(json.dumps(envelope, ensure_ascii=False))

    async def start(self) -> None:
        if self.state is not TaskState.CREATED:
            raise RuntimeError(f"Task {self.task_id} already started")
        self.state = TaskState.AWAITING_START
        await self._send(build_run_task(self.task_id, self.model, self.params))
        self.log.debug("Sent run-task on session %s", self.session.id)

    def abort(self) -> None:
        if not self.is_terminal:
            self.log.debug("Aborting task in state %s", self.state.value)
            self.state = TaskState.FAILED

    async def handle_message(self, message: Message) -> None:
        if isinstance(message, (bytes, bytearray, memoryview)):
            if self.state not in AUDIO_STATES:
                self.log.debug("Dropping %s audio bytes received in state %s", len(message), self.state.value)
                return
            self.listener.on_audio(bytes(message))
            return

        header = parse_event(message)
        if header is None:
            return

        task_id = header.get("task_id")
        if task_id and task_id != self.task_id:
            self.log.debug("Ignoring event for foreign task %s", task_id)
            return

        event = header["event"]
        if event == EVENT_TASK_STARTED:
            await self._on_started()
        elif event == EVENT_TASK_FINISHED:
            if self.is_terminal:
                return
            self.state = TaskState.FINISHED
            self.listener.on_task_finished()
        elif event == EVENT_TASK_FAILED:
            if self.is_terminal:
                return
            self.state = TaskState.FAILED
            code = header.get("error_code")
            detail = header.get("error_message")
            self.log.warning("Upstream task failed: %s %s", code, detail)
            self.listener.on_task_failed(code, detail)

    async def _on_started(self) -> None:
        if self.state is not TaskState.AWAITING_START:
            return
        self.state = TaskState.FEEDING
        try:
            await self._send(build_continue_task(self.task_id, self.text))
            await self._send(build_finish_task(self.task_id))
        except SessionClosedError:
            # The session reader reports the close to the bridge.
            self.log.warning("Session %s closed while feeding text", self.session.id)
            return
        if self.state is TaskState.FEEDING:
            self.state = TaskState.AWAITING_FINISH
