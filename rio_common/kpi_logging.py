"""KPI logging helpers for the estimation core."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("rio_fusion.kpi")


class KPILogger:
    """Emit structured KPI events for downstream analysis."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        if self._emit_to_logger:
            logger.info("KPI %s", json.dumps(payload, sort_keys=True))
        if self._fh:
            self._fh.write(json.dumps(payload, sort_keys=True) + "\n")
            self._fh.flush()

    def solve_submitted(self, solve_id: int, factor_count: int, value_count: int, propagations: int) -> None:
        self._emit(
            "solve_submitted",
            solve_id=solve_id,
            factor_count=factor_count,
            value_count=value_count,
            propagations=propagations,
        )

    def optimization_end(
        self,
        solve_id: int,
        duration_s: float,
        *,
        retained_propagations: Optional[int] = None,
        window_start: Optional[float] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            solve_id=solve_id,
            duration_s=duration_s,
            retained_propagations=retained_propagations,
            window_start=window_start,
        )

    def solve_failed(self, solve_id: int, stage: str, reason: str) -> None:
        self._emit("solve_failed", solve_id=solve_id, stage=stage, reason=reason)

    def result_reconciled(self, solve_id: int, replaced: int, repropagated: int, stale: int, dropped: int) -> None:
        self._emit(
            "result_reconciled",
            solve_id=solve_id,
            replaced=replaced,
            repropagated=repropagated,
            stale=stale,
            dropped=dropped,
        )

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
