"""Diagnostics support for the call ledger."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict
from typing import Any

from .coordinator import CallLedgerCoordinator

_LOGGER = logging.getLogger(__name__)

REDACTED = "**REDACTED**"

# Keys to redact from diagnostics for privacy
REDACT_KEYS = {
    "contact",
    "contact_name",
    "number",
    "phone_key",
    "phoneNumber",
    "notes",
    "sink_url",
    "url",
    "storage_path",
    "path",
}


def redact_data(data: Any, to_redact: set[str] = REDACT_KEYS) -> Any:
    """Return a copy of *data* with the values of sensitive keys replaced."""
    if isinstance(data, Mapping):
        return {
            key: (
                REDACTED
                if key in to_redact and value is not None
                else redact_data(value, to_redact)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_data(item, to_redact) for item in data]
    return data


def get_diagnostics(coordinator: CallLedgerCoordinator) -> dict[str, Any]:
    """Return a redacted snapshot of configuration, engine and health state."""
    engine = coordinator.engine
    diagnostics_data = {
        "config": asdict(coordinator.config),
        "monitor": coordinator.get_resilience_status(),
        "engine": engine.get_state_summary() if engine else None,
        "storage": coordinator.store.get_storage_stats(),
        "recent_records": [
            record.to_dict() for record in coordinator.store.records[-10:]
        ],
        "summary": get_diagnostic_summary(coordinator),
    }
    return redact_data(diagnostics_data)


def get_diagnostic_summary(coordinator: CallLedgerCoordinator) -> dict[str, Any]:
    """Get a summary of diagnostic information for quick troubleshooting."""
    healthy, issues = coordinator.resilience.is_healthy()
    stats = coordinator.resilience.stats

    health_factors = {
        "monitoring": coordinator.is_running,
        "resilience_healthy": healthy,
        "deliveries_succeeding": (
            stats.delivery_failures < stats.deliveries_sent
            if stats.deliveries_sent
            else None
        ),
        "storage_ok": (
            coordinator.store.save_failures == 0
            if coordinator.store.get_storage_stats()["path"]
            else None
        ),
    }

    health_score = sum(1 for factor in health_factors.values() if factor is True)
    max_score = sum(1 for factor in health_factors.values() if factor is not None)
    health_percentage = (health_score / max_score * 100) if max_score > 0 else 0

    return {
        "status": (
            "healthy"
            if health_percentage >= 80
            else "warning" if health_percentage >= 50 else "error"
        ),
        "health_percentage": health_percentage,
        "health_factors": health_factors,
        "issues": issues,
        "quick_stats": {
            "status_line": coordinator.status_line,
            "delivered": coordinator.delivered_count,
            "records": len(coordinator.store),
            "parse_failures": stats.parse_failures,
            "delivery_failures": stats.delivery_failures,
        },
        "recommendations": _get_diagnostic_recommendations(coordinator),
    }


def _get_diagnostic_recommendations(coordinator: CallLedgerCoordinator) -> list[str]:
    """Get recommendations based on diagnostic data."""
    recommendations = []
    stats = coordinator.resilience.stats

    if not coordinator.is_running:
        recommendations.append("Monitoring is stopped - start it to collect missed calls")

    if stats.delivery_failures:
        recommendations.append(
            f"{stats.delivery_failures} deliveries failed - check the sink URL and connectivity"
        )

    if stats.parse_failures > 10:
        recommendations.append(
            "Many rows could not be parsed - the call list format may have changed"
        )

    if coordinator.store.corrupt_loads:
        recommendations.append("Persisted state was unreadable and has been reset")

    if not recommendations:
        recommendations.append("All systems appear to be functioning normally")

    return recommendations
