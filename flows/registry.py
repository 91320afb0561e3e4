"""
Flow Registry — holds validated flow definitions and the active flow.

Flows are loaded from YAML/JSON files (one flow per file) or saved through
the admin API, which also writes them to the state store so they are
reloaded on startup. Saving always validates first; an invalid graph never
reaches the interpreter. Exactly one flow is active at a time and handles
conversations that have no execution state yet.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from database.store_base import BaseStateStore
from flows.models import FlowDefinition
from flows.validation import validate_flow
from models.errors import ValidationError

logger = structlog.get_logger()


class FlowRegistry:

    def __init__(self):
        self._flows: dict[str, FlowDefinition] = {}
        self._active_id: Optional[str] = None

    # ── Registration ──────────────────────────────────

    def save(self, flow: FlowDefinition | dict[str, Any]) -> FlowDefinition:
        """Validate and store a flow. Raises ValidationError when malformed."""
        if isinstance(flow, dict):
            flow = FlowDefinition.model_validate(flow)
        validate_flow(flow)

        previous = self._flows.get(flow.id)
        if previous is not None and flow.version <= previous.version:
            flow = flow.model_copy(update={"version": previous.version + 1})
        self._flows[flow.id] = flow
        if flow.is_active or self._active_id is None:
            self.activate(flow.id)

        logger.info("flow_saved",
                    flow_id=flow.id,
                    version=flow.version,
                    nodes=len(flow.nodes),
                    edges=len(flow.edges))
        return self._flows[flow.id]

    def load_from_config(self, config: list[dict[str, Any]]) -> int:
        for raw in config:
            self.save(raw)
        logger.info("flows_loaded", count=len(config))
        return len(config)

    def load_directory(self, directory: str) -> int:
        """Load every *.yaml / *.yml / *.json file in a directory."""
        path = Path(directory)
        if not path.is_dir():
            logger.warning("flow_directory_missing", directory=directory)
            return 0
        raw_flows = []
        for file in sorted(path.iterdir()):
            if file.suffix in (".yaml", ".yml"):
                with open(file) as f:
                    raw_flows.append(yaml.safe_load(f))
            elif file.suffix == ".json":
                with open(file) as f:
                    raw_flows.append(json.load(f))
        return self.load_from_config([r for r in raw_flows if r])

    # ── Lookup ────────────────────────────────────────

    def get(self, flow_id: str) -> Optional[FlowDefinition]:
        return self._flows.get(flow_id)

    def list_all(self) -> list[FlowDefinition]:
        return list(self._flows.values())

    @property
    def active(self) -> Optional[FlowDefinition]:
        return self._flows.get(self._active_id) if self._active_id else None

    def activate(self, flow_id: str) -> FlowDefinition:
        """Mark one flow active and every other flow inactive."""
        if flow_id not in self._flows:
            raise KeyError(flow_id)
        for fid, flow in list(self._flows.items()):
            if flow.is_active != (fid == flow_id):
                self._flows[fid] = flow.model_copy(update={"is_active": fid == flow_id})
        self._active_id = flow_id
        logger.info("flow_activated", flow_id=flow_id)
        return self._flows[flow_id]

    def remove(self, flow_id: str) -> bool:
        if self._flows.pop(flow_id, None) is None:
            return False
        if self._active_id == flow_id:
            self._active_id = None
        return True

    # ── Persistence ───────────────────────────────────

    async def persist(self, store: BaseStateStore) -> int:
        """Write every flow to the store; activation flags change across flows together."""
        for flow in self._flows.values():
            await store.save_flow(flow.model_dump(mode="json", by_alias=True))
        return len(self._flows)

    async def load_store(self, store: BaseStateStore) -> int:
        """Load flows saved through the admin API. Bad records are logged and skipped."""
        loaded = 0
        for raw in await store.list_flows():
            try:
                self.save(raw)
                loaded += 1
            except (ValidationError, PydanticValidationError) as e:
                logger.error("stored_flow_invalid", flow_id=raw.get("id"), error=str(e))
        logger.info("flows_loaded_from_store", count=loaded)
        return loaded
