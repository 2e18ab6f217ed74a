"""
Request-scoped tracing for ChargeCheck searches.

A search fans out to several Google calls and one Open Charge Map call per
place, most of them from worker threads.  TraceContext collects, per request:
  - stage timings (origin, places, distances, chargers, correlate, filter)
  - every outbound call, tagged with the stage that was running
  - funnel counts (places found -> in radius, chargers fetched -> matched -> shown)

Usage:
    ctx = TraceContext(trace_id=request_id, query=query)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

Worker threads must call set_trace(parent) before making traced calls;
see open_charge_map.get_chargers_for_places.
"""

import time
import threading
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Records
# =============================================================================

@dataclass
class APICallRecord:
    service: str          # "google_maps" | "open_charge_map"
    endpoint: str         # "geocode", "text_search", "driving_distances_batch", "poi"
    elapsed_ms: int
    status_code: int      # 0 when no response arrived (timeout, connection error)
    provider_status: str = ""
    retried: bool = False
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.error_class)


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Timing, call and funnel data for one search request.

    record_api_call is safe to call from the charger fetch workers; stage
    bookkeeping happens on the request thread only.
    """
    trace_id: str
    query: str = ""
    model_version: str = ""
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    _current_stage: str = ""
    _lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    def start_stage(self, name: str):
        self._current_stage = name

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=calls,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)
        self._current_stage = ""

        if rec.failed:
            logger.warning(
                "  [stage] trace=%s %s ERR %dms calls=%d %s: %s",
                self.trace_id, stage_name, rec.elapsed_ms, calls,
                error_class, error_message,
            )
        else:
            logger.info(
                "  [stage] trace=%s %s OK %dms calls=%d",
                self.trace_id, stage_name, rec.elapsed_ms, calls,
            )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
        retried: bool = False,
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            retried=retried,
            stage=self._current_stage,
        )
        with self._lock:
            self.api_calls.append(rec)
        logger.debug(
            "  [api] trace=%s stage=%s %s/%s %dms http=%d %s",
            self.trace_id, rec.stage or "-", service, endpoint,
            elapsed_ms, status_code, provider_status,
        )

    def record_count(self, name: str, value: int):
        """Funnel counter, e.g. record_count("places_in_radius", 4)."""
        self.counts[name] = value

    def outcome(self) -> str:
        failed = [s for s in self.stages if s.failed]
        if not self.stages:
            return "empty"
        if len(failed) == len(self.stages):
            return "error"
        if failed:
            return "partial"
        return "success"

    def summary_dict(self) -> Dict[str, Any]:
        with self._lock:
            calls = list(self.api_calls)
        by_service = Counter(c.service for c in calls)
        summary = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(calls),
            "api_calls_by_service": dict(sorted(by_service.items())),
            "retried_calls": sum(1 for c in calls if c.retried),
            "stages_completed": sum(1 for s in self.stages if not s.failed),
            "stages_errored": sum(1 for s in self.stages if s.failed),
            "final_outcome": self.outcome(),
            "counts": dict(self.counts),
        }
        if self.query:
            summary["query"] = self.query
        if self.model_version:
            summary["model_version"] = self.model_version
        return summary

    def log_summary(self):
        s = self.summary_dict()
        funnel = " ".join(f"{k}={v}" for k, v in s["counts"].items())
        logger.info(
            "[trace-summary] trace=%s query=%r outcome=%s total_ms=%d "
            "api_calls=%d retried=%d %s",
            s["trace_id"],
            self.query,
            s["final_outcome"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["retried_calls"],
            funnel,
        )

    def full_trace_dict(self) -> Dict[str, Any]:
        """Summary plus per-stage and per-call detail (the debug trace)."""
        full = self.summary_dict()
        full["stages"] = [
            {
                "stage": s.stage_name,
                "elapsed_ms": s.elapsed_ms,
                "api_calls": s.api_calls_made,
                "error": f"{s.error_class}: {s.error_message}" if s.failed else None,
            }
            for s in self.stages
        ]
        with self._lock:
            full["api_calls"] = [
                {
                    "service": c.service,
                    "endpoint": c.endpoint,
                    "stage": c.stage,
                    "elapsed_ms": c.elapsed_ms,
                    "status_code": c.status_code,
                    "provider_status": c.provider_status,
                    "retried": c.retried,
                }
                for c in self.api_calls
            ]
        return full


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
