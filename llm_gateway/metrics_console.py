# llm_gateway/metrics_console.py
# SPDX-License-Identifier: Apache-2.0
"""
Console :class:`~llm_gateway.metrics.MetricsSink` for the CLI and local debugging.

Each observation, counter increment or gauge update becomes one line:

    [OBS] {"ts":"...","component":"llm_gateway","op":"request_duration_seconds","ms":812.4,...}
    [CTR] {"ts":"...","component":"llm_gateway","name":"tokens_total","value":42,...}
    [GAU] {"ts":"...","component":"llm_gateway","name":"breaker_state","value":1,...}

Labels are filtered to short scalar values so a stray prompt never ends up
on the terminal.
"""

from __future__ import annotations

import json
import sys
import threading
import time
from typing import Any, Dict, Mapping, Optional, TextIO

__all__ = ["ConsoleMetrics"]

_LOCK = threading.Lock()
_ENCODER = json.JSONEncoder(separators=(",", ":"), ensure_ascii=False, check_circular=False)

_COLORS = {
    "CTR": "\x1b[36m",
    "GAU": "\x1b[35m",
    "OBS_OK": "\x1b[32m",
    "OBS_ERR": "\x1b[31m",
}
_RESET = "\x1b[0m"

MAX_LABEL_VALUE_LEN = 200


class ConsoleMetrics:
    """
    Print metrics as structured lines.

    Args:
        colored: ANSI colors when the output is a TTY.
        flush: Flush after every line.
        output_file: Destination stream (default stdout).
        max_labels: Labels kept per line, in sorted key order.
    """

    def __init__(
        self,
        *,
        colored: bool = True,
        flush: bool = True,
        output_file: Optional[TextIO] = None,
        max_labels: int = 10,
    ) -> None:
        self.output_file = output_file or sys.stdout
        isatty = getattr(self.output_file, "isatty", None)
        self.colored = bool(colored and isatty is not None and isatty())
        self.flush = flush
        self.max_labels = max_labels

    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not component or not op:
            return
        payload: Dict[str, Any] = {
            "ts": _ts(),
            "component": component,
            "op": op,
            "ms": round(max(0.0, float(ms)), 3),
            "ok": bool(ok),
            "code": str(code or "OK"),
        }
        self._emit("OBS", payload, extra, ok)

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: float = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not component or not name:
            return
        v = float(value)
        payload: Dict[str, Any] = {
            "ts": _ts(),
            "component": component,
            "name": name,
            "value": int(v) if v.is_integer() else v,
        }
        self._emit("CTR", payload, extra, True)

    def gauge(
        self,
        *,
        component: str,
        name: str,
        value: float,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not component or not name:
            return
        payload: Dict[str, Any] = {
            "ts": _ts(),
            "component": component,
            "name": name,
            "value": float(value),
        }
        self._emit("GAU", payload, extra, True)

    # ------------------------------------------------------------------

    def _emit(self, tag: str, payload: Dict[str, Any], extra: Optional[Mapping[str, Any]], ok: bool) -> None:
        labels = self._labels(extra)
        if labels:
            payload["labels"] = labels
        line = f"{self._prefix(tag, ok)} {_ENCODER.encode(payload)}"
        with _LOCK:
            print(line, file=self.output_file, flush=self.flush)

    def _prefix(self, tag: str, ok: bool) -> str:
        if not self.colored:
            return f"[{tag}]"
        key = tag if tag != "OBS" else ("OBS_OK" if ok else "OBS_ERR")
        return f"{_COLORS[key]}[{tag}]{_RESET}"

    def _labels(self, extra: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        if not extra:
            return None
        out: Dict[str, Any] = {}
        for k, v in sorted(extra.items(), key=lambda kv: str(kv[0])):
            if len(out) >= self.max_labels:
                break
            if not isinstance(k, str):
                continue
            if v is None or isinstance(v, (bool, int, float)):
                out[k] = v
            elif isinstance(v, str) and len(v) <= MAX_LABEL_VALUE_LEN:
                out[k] = v
        return out or None


def _ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
