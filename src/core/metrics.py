"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, List, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_rate_limit_block_total: Dict[str, int] = defaultdict(int)
_jobs_enqueued_total: Dict[Tuple[str, str], int] = defaultdict(int)
_jobs_claimed_total: Dict[str, int] = defaultdict(int)
_jobs_finished_total: Dict[Tuple[str, str], int] = defaultdict(int)
_webhook_deliveries_total: Dict[Tuple[str, str], int] = defaultdict(int)
_publish_requests_total: Dict[str, int] = defaultdict(int)
_budget_blocks_total: Dict[str, int] = defaultdict(int)
_approval_decisions_total: Dict[Tuple[str, str], int] = defaultdict(int)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_rate_limit_block(*, kind: str) -> None:
    with _lock:
        _rate_limit_block_total[_normalize_label(kind)] += 1


def record_job_enqueued(*, job_type: str, outcome: str, count: int = 1) -> None:
    if count <= 0:
        return
    with _lock:
        _jobs_enqueued_total[(_normalize_label(job_type), _normalize_label(outcome))] += int(count)


def record_jobs_claimed(*, org_id: str, count: int) -> None:
    if count <= 0:
        return
    with _lock:
        _jobs_claimed_total[_normalize_label(org_id)] += int(count)


def record_job_finished(*, job_type: str, outcome: str) -> None:
    with _lock:
        _jobs_finished_total[(_normalize_label(job_type), _normalize_label(outcome))] += 1


def record_webhook_delivery(*, platform: str, outcome: str) -> None:
    with _lock:
        _webhook_deliveries_total[(_normalize_label(platform), _normalize_label(outcome))] += 1


def record_publish_request(*, outcome: str) -> None:
    with _lock:
        _publish_requests_total[_normalize_label(outcome)] += 1


def record_budget_block(*, budget_type: str) -> None:
    with _lock:
        _budget_blocks_total[_normalize_label(budget_type)] += 1


def record_approval_decision(*, entity_type: str, decision: str) -> None:
    with _lock:
        _approval_decisions_total[(_normalize_label(entity_type), _normalize_label(decision))] += 1


def _render_counter(
    lines: List[str],
    *,
    name: str,
    help_text: str,
    label_names: Tuple[str, ...],
    values: Dict,
) -> None:
    lines.extend(
        [
            f"# HELP {name} {help_text}",
            f"# TYPE {name} counter",
        ]
    )
    for key, value in sorted(values.items()):
        labels = key if isinstance(key, tuple) else (key,)
        rendered = ",".join(
            f'{label}="{_escape_label(str(item))}"' for label, item in zip(label_names, labels)
        )
        lines.append(f"{name}{{{rendered}}} {value}")


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        rate_limit_total = dict(_rate_limit_block_total)
        jobs_enqueued_total = dict(_jobs_enqueued_total)
        jobs_claimed_total = dict(_jobs_claimed_total)
        jobs_finished_total = dict(_jobs_finished_total)
        webhook_deliveries_total = dict(_webhook_deliveries_total)
        publish_requests_total = dict(_publish_requests_total)
        budget_blocks_total = dict(_budget_blocks_total)
        approval_decisions_total = dict(_approval_decisions_total)

    lines = [
        "# HELP opshub_build_info Build metadata.",
        "# TYPE opshub_build_info gauge",
        (
            f'opshub_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP opshub_process_uptime_seconds Process uptime in seconds.",
        "# TYPE opshub_process_uptime_seconds gauge",
        f"opshub_process_uptime_seconds {uptime:.6f}",
    ]

    _render_counter(
        lines,
        name="opshub_http_requests_total",
        help_text="Total HTTP requests.",
        label_names=("method", "path", "status"),
        values=http_total,
    )

    lines.extend(
        [
            "# HELP opshub_http_request_duration_seconds Request duration summary.",
            "# TYPE opshub_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'opshub_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'opshub_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    _render_counter(
        lines,
        name="opshub_rate_limit_block_total",
        help_text="Requests blocked by rate limiting.",
        label_names=("kind",),
        values=rate_limit_total,
    )
    _render_counter(
        lines,
        name="opshub_jobs_enqueued_total",
        help_text="Enqueue attempts by job type and outcome.",
        label_names=("job_type", "outcome"),
        values=jobs_enqueued_total,
    )
    _render_counter(
        lines,
        name="opshub_jobs_claimed_total",
        help_text="Jobs handed to workers.",
        label_names=("org_id",),
        values=jobs_claimed_total,
    )
    _render_counter(
        lines,
        name="opshub_jobs_finished_total",
        help_text="Job outcomes reported by workers and operators.",
        label_names=("job_type", "outcome"),
        values=jobs_finished_total,
    )
    _render_counter(
        lines,
        name="opshub_webhook_deliveries_total",
        help_text="Inbound webhook deliveries by platform and outcome.",
        label_names=("platform", "outcome"),
        values=webhook_deliveries_total,
    )
    _render_counter(
        lines,
        name="opshub_publish_requests_total",
        help_text="Publish requests by outcome.",
        label_names=("outcome",),
        values=publish_requests_total,
    )
    _render_counter(
        lines,
        name="opshub_budget_blocks_total",
        help_text="Operations rejected by budget admission control.",
        label_names=("budget_type",),
        values=budget_blocks_total,
    )
    _render_counter(
        lines,
        name="opshub_approval_decisions_total",
        help_text="Approval decisions by entity type.",
        label_names=("entity_type", "decision"),
        values=approval_decisions_total,
    )

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _rate_limit_block_total.clear()
        _jobs_enqueued_total.clear()
        _jobs_claimed_total.clear()
        _jobs_finished_total.clear()
        _webhook_deliveries_total.clear()
        _publish_requests_total.clear()
        _budget_blocks_total.clear()
        _approval_decisions_total.clear()
    _started_at = time.time()
