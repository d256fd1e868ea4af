"""Line-oriented channel codec between the coordinator and one worker.

Coordinator to worker::

    do <attr path>
    exit

Worker to coordinator::

    next                          ready for a command
    restart                       worker is exiting, spawn a fresh one
    {"job": {...}}                one JSON object per reply, at most one key
    {"attrs": ["a", "b"]}
    {"error": "message"}
    {}                            null node

Every record is one newline-terminated line. The codec keeps no state.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum

from hydra_eval_jobs.eval_jobs.models import JobResult, ResultKind

READY = "next"
RESTART = "restart"
EXIT = "exit"
DO_PREFIX = "do "

_REPLY_KEYS = frozenset({"job", "attrs", "error"})


class ProtocolError(RuntimeError):
    """Malformed or out-of-vocabulary channel record."""


class CommandKind(str, Enum):
    DO = "do"
    EXIT = "exit"


class MessageKind(str, Enum):
    READY = "ready"
    RESTART = "restart"
    RESULT = "result"


@dataclass(slots=True, frozen=True)
class Command:
    """Coordinator request as decoded by the worker."""

    kind: CommandKind
    attr_path: str | None = None


@dataclass(slots=True, frozen=True)
class WorkerMessage:
    """Worker record as decoded by the coordinator."""

    kind: MessageKind
    result: JobResult | None = None


def encode_do(attr_path: str) -> str:
    if "\n" in attr_path:
        raise ProtocolError(f"Attribute path cannot contain a newline: {attr_path!r}")
    return f"{DO_PREFIX}{attr_path}\n"


def encode_exit() -> str:
    return f"{EXIT}\n"


def encode_ready() -> str:
    return f"{READY}\n"


def encode_restart() -> str:
    return f"{RESTART}\n"


def encode_result(result: JobResult) -> str:
    payload: dict[str, object] = {}
    if result.kind is ResultKind.JOB:
        payload["job"] = result.job or {}
    elif result.kind is ResultKind.CHILDREN:
        payload["attrs"] = list(result.children)
    elif result.kind is ResultKind.ERROR:
        payload["error"] = result.error or ""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"


def encode_error(message: str) -> str:
    return encode_result(JobResult.for_error(message))


def decode_command(line: str) -> Command:
    text = _strip_newline(line)
    if text == EXIT:
        return Command(kind=CommandKind.EXIT)
    if text.startswith(DO_PREFIX):
        return Command(kind=CommandKind.DO, attr_path=text[len(DO_PREFIX) :])
    raise ProtocolError(f"Unexpected command from coordinator: {text!r}")


def decode_worker_message(line: str) -> WorkerMessage:
    """Decode one worker record; the handler decides what each kind means in its state."""

    text = _strip_newline(line)
    if text == READY:
        return WorkerMessage(kind=MessageKind.READY)
    if text == RESTART:
        return WorkerMessage(kind=MessageKind.RESTART)
    return WorkerMessage(kind=MessageKind.RESULT, result=decode_result(text))


def decode_result(text: str) -> JobResult:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise ProtocolError(f"Malformed worker record: {text[:200]!r}") from error
    if not isinstance(payload, dict):
        raise ProtocolError(f"Worker record must be a JSON object: {text[:200]!r}")

    present = _REPLY_KEYS.intersection(payload)
    unknown = set(payload) - _REPLY_KEYS
    if unknown:
        raise ProtocolError(f"Unknown keys in worker record: {sorted(unknown)}")
    if len(present) > 1:
        raise ProtocolError(f"Worker record carries more than one result: {sorted(present)}")

    if "job" in payload:
        job = payload["job"]
        if not isinstance(job, dict) or not isinstance(job.get("drvPath"), str):
            raise ProtocolError("Worker job record must be an object with a drvPath string.")
        return JobResult(kind=ResultKind.JOB, job=job)
    if "attrs" in payload:
        attrs = payload["attrs"]
        if not isinstance(attrs, list) or not all(isinstance(name, str) for name in attrs):
            raise ProtocolError("Worker attrs record must be an array of strings.")
        return JobResult.for_children(attrs)
    if "error" in payload:
        message = payload["error"]
        if not isinstance(message, str):
            raise ProtocolError("Worker error record must be a string.")
        return JobResult.for_error(message)
    return JobResult.empty()


def _strip_newline(line: str) -> str:
    # The trailing space of "do " for the root path is significant.
    return line.removesuffix("\n")
