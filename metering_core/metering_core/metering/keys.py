"""Idempotency key builders for usage producers.

Producers should build keys from the identity of the logical operation
(request id, job run id, file id) so that a retry of the same operation
yields the same key.
"""

from __future__ import annotations

import hashlib
import json

from metering_core.models.usage import UsageEventInput


def traffic_key(method: str, workspace_id: str, endpoint: str, request_id: str) -> str:
    return f"traffic:{method.upper()}:{workspace_id}:{endpoint}:{request_id}"


def compute_key(job_type: str, workspace_id: str, operation_id: str) -> str:
    return f"compute:{job_type}:{workspace_id}:{operation_id}"


def storage_key(operation: str, workspace_id: str, file_id: str, timestamp_ms: int) -> str:
    return f"storage:{operation}:{workspace_id}:{file_id}:{timestamp_ms}"


def generic_key(module: str, operation: str, context_id: str, timestamp_ms: int) -> str:
    return f"{module}:{operation}:{context_id}:{timestamp_ms}"


def derive_key(event: UsageEventInput) -> str:
    """Content-derived key for events submitted without one.

    Two submissions with identical fields (including the usage timestamp)
    are treated as the same operation.
    """
    payload = {
        "workspace_id": event.workspace_id,
        "project_id": event.project_id,
        "resource_type": event.resource_type.value,
        "units": repr(float(event.units)),
        "source": event.source.value,
        "timestamp": event.timestamp.isoformat(),
        "job_type": event.job_type,
        "metadata": event.metadata,
    }
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"{event.resource_type.value}:auto:{event.workspace_id}:{digest[:32]}"
