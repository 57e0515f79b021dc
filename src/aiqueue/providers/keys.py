"""
Dedup key generators for queue entries.

Every generator takes the same keyword arguments so an adapter can plug any of
them in: ``type``, ``model``, ``entry_type``, ``task_params``,
``reference_key`` and ``retry``. Missing required fields raise ``ValueError``.
"""

from __future__ import annotations

import re
import typing as t
import uuid
from datetime import datetime

from aiqueue.models import now_ms


def _retry_suffix(retry: bool) -> str:
    return "_retry" if retry else ""


def _require(fields: t.Mapping[str, t.Any], generator: str) -> None:
    missing = [name for name, value in fields.items() if value is None]
    if missing:
        raise ValueError(
            f"{generator}: all parameters ({', '.join(fields)}) must be defined, missing {missing}"
        )


def normalize_identifier(identifier: str) -> str:
    return re.sub(r"\s+", "_", identifier.lower())


def ai_queue_to_unique(
    *,
    type: str | None,
    model: str | None,
    entry_type: str | None,
    task_params: t.Mapping[str, t.Any] | None,
    reference_key: str | None = None,
    retry: bool = False,
) -> str:
    _require(
        {"type": type, "model": model, "entry_type": entry_type, "task_params": task_params},
        "ai_queue_to_unique",
    )
    reference = reference_key or f"{now_ms()}_{uuid.uuid4().hex[:13]}"
    safe_model = t.cast(str, model).replace("/", "_")
    return f"{type}_{safe_model}_{entry_type}_{reference}{_retry_suffix(retry)}"


def modal_queue_to_unique(
    *,
    type: str | None,
    entry_type: str | None,
    task_params: t.Mapping[str, t.Any] | None,
    model: str | None = None,
    reference_key: str | None = None,
    retry: bool = False,
) -> str:
    params = task_params or {}
    scene_id = params.get("sceneId")
    chapter = params.get("chapter")
    scene_number = params.get("scene_number")
    _require(
        {
            "type": type,
            "entry_type": entry_type,
            "sceneId": scene_id,
            "chapter": chapter,
            "scene_number": scene_number,
        },
        "modal_queue_to_unique",
    )
    return f"{type}_{entry_type}_{scene_id}_{chapter}_{scene_number}{_retry_suffix(retry)}"


def fal_queue_to_unique(
    *,
    type: str | None,
    entry_type: str | None,
    task_params: t.Mapping[str, t.Any] | None,
    model: str | None = None,
    reference_key: str | None = None,
    retry: bool = False,
) -> str:
    params = task_params or {}
    graph_id = params.get("graphId")
    identifier = params.get("identifier")
    chapter = params.get("chapter")
    _require(
        {
            "type": type,
            "entry_type": entry_type,
            "graphId": graph_id,
            "identifier": identifier,
            "chapter": chapter,
        },
        "fal_queue_to_unique",
    )
    return f"{type}_{entry_type}_{graph_id}_{identifier}_ch{chapter}{_retry_suffix(retry)}"


def book_import_queue_to_unique(
    *,
    type: str | None,
    entry_type: str | None,
    task_params: t.Mapping[str, t.Any] | None,
    model: str | None = None,
    reference_key: str | None = None,
    retry: bool = False,
) -> str:
    params = task_params or {}
    uid = params.get("uid")
    sku = params.get("sku")
    if not uid or not sku:
        raise ValueError("book_import_queue_to_unique: uid and sku must be defined in task_params")
    return f"{type}_{entry_type}_{uid}_{sku}_{now_ms()}{_retry_suffix(retry)}"


def transcription_queue_to_unique(
    *,
    entry_type: str | None,
    task_params: t.Mapping[str, t.Any] | None,
    type: str | None = None,
    model: str | None = None,
    reference_key: str | None = None,
    retry: bool = False,
) -> str:
    params = task_params or {}
    uid = params.get("uid")
    sku = params.get("sku")
    chapter = params.get("chapter")
    _require(
        {"entry_type": entry_type, "uid": uid, "sku": sku, "chapter": chapter},
        "transcription_queue_to_unique",
    )
    unique = params.get("unique") or datetime.now().strftime("%Y%m%d%H%M")
    return f"{entry_type}_{uid}_{sku}_{chapter}_{unique}{_retry_suffix(retry)}"
