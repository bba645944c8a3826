"""
FlowRepository — read-only, versioned store of FlowGraphs.

Activating a flow publishes a new version; conversations already running
stay pinned to the version they started on. Flow documents are loaded from
YAML or JSON files written by the editor, and an operator can reload a
single flow from the file it came from.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional, Union

import structlog
import yaml

from core.errors import UnknownFlowError
from flows.graph import FlowGraph
from models.schemas import ChannelType, Flow, Trigger

logger = structlog.get_logger()

_PHONE_RE = re.compile(r"^\+?[\d\s().-]{3,}$")
_SPECIAL_KEYS = {"entryNodeId", "keyword", "keywords"}


def _normalize(value: Any) -> str:
    """Phone-like values compare digits-only; everything else case-insensitively."""
    text = str(value).strip()
    if _PHONE_RE.match(text):
        return re.sub(r"\D", "", text)
    return text.lower()


def _keyword_matches(expected: Any, text: str) -> bool:
    words = expected if isinstance(expected, list) else [expected]
    msg = (text or "").strip().lower()
    for word in words:
        kw = str(word).strip().lower()
        if kw and (msg == kw or msg.startswith(kw + " ")):
            return True
    return False


def _channel_matches(trigger_channel: ChannelType, channel: ChannelType) -> bool:
    if trigger_channel in (ChannelType.ALL, channel):
        return True
    return trigger_channel == ChannelType.VOICE and channel.voice_capable


class FlowRepository:

    def __init__(self):
        self._versions: dict[str, list[FlowGraph]] = {}
        self._sources: dict[str, Path] = {}

    # ══════════════════════════════════════════════════════════
    #  ACTIVATION + LOOKUP
    # ══════════════════════════════════════════════════════════

    def activate(self, flow: Union[Flow, dict[str, Any]]) -> FlowGraph:
        """Validate and publish a new version. Raises GraphIntegrityError."""
        if isinstance(flow, dict):
            flow = Flow.model_validate(flow)
        versions = self._versions.get(flow.id, [])
        pinned = flow.model_copy(update={"version": len(versions) + 1}, deep=True)
        for trigger in pinned.triggers:
            if not trigger.flow_id:
                trigger.flow_id = pinned.id

        graph = FlowGraph(pinned)
        self._versions.setdefault(flow.id, []).append(graph)
        logger.info("flow_activated",
                    flow_id=flow.id,
                    version=pinned.version,
                    nodes=len(graph),
                    triggers=len(pinned.triggers))
        return graph

    def load_flow(self, flow_id: str, version: Optional[int] = None) -> FlowGraph:
        versions = self._versions.get(flow_id)
        if not versions:
            raise UnknownFlowError(flow_id, version)
        if version is None or version <= 0:
            return versions[-1]
        if version > len(versions):
            raise UnknownFlowError(flow_id, version)
        return versions[version - 1]

    def get(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowGraph]:
        try:
            return self.load_flow(flow_id, version)
        except UnknownFlowError:
            return None

    def flow_ids(self) -> list[str]:
        return list(self._versions.keys())

    def latest_graphs(self) -> list[FlowGraph]:
        return [v[-1] for v in self._versions.values() if v]

    def versions(self, flow_id: str) -> list[int]:
        return [g.version for g in self._versions.get(flow_id, [])]

    # ══════════════════════════════════════════════════════════
    #  TRIGGER MATCHING
    # ══════════════════════════════════════════════════════════

    def match_trigger(
        self,
        channel_type: ChannelType,
        trigger_type: str,
        attributes: Optional[dict[str, Any]] = None,
        text: str = "",
    ) -> Optional[tuple[FlowGraph, Trigger]]:
        """First active trigger (registration order) whose filter fits the event."""
        attributes = attributes or {}
        for graph in self.latest_graphs():
            if not graph.flow.active:
                continue
            for trigger in graph.triggers:
                if self._trigger_matches(trigger, channel_type, trigger_type, attributes, text):
                    return graph, trigger
        return None

    @staticmethod
    def _trigger_matches(
        trigger: Trigger,
        channel_type: ChannelType,
        trigger_type: str,
        attributes: dict[str, Any],
        text: str,
    ) -> bool:
        if not trigger.active:
            return False
        if trigger.trigger_type not in (trigger_type, "any", "*"):
            return False
        if not _channel_matches(trigger.channel_type, channel_type):
            return False

        config = trigger.configuration
        for key in ("keyword", "keywords"):
            if config.get(key) and not _keyword_matches(config[key], text):
                return False

        for key, expected in config.items():
            if key in _SPECIAL_KEYS or expected in (None, ""):
                continue
            actual = attributes.get(key)
            if actual is None:
                return False
            if _normalize(actual) != _normalize(expected):
                return False
        return True

    # ══════════════════════════════════════════════════════════
    #  FILE LOADING
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _read_documents(path: Path) -> list[dict[str, Any]]:
        with open(path, encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                raw = json.load(f)
            else:
                raw = yaml.safe_load(f)
        if raw is None:
            return []
        if isinstance(raw, dict) and "flows" in raw:
            raw = raw["flows"]
        return raw if isinstance(raw, list) else [raw]

    def load_from_file(self, path: Union[str, Path]) -> list[FlowGraph]:
        path = Path(path)
        graphs = []
        for doc in self._read_documents(path):
            graph = self.activate(doc)
            self._sources[graph.flow_id] = path
            graphs.append(graph)
        logger.info("flows_loaded", path=str(path), count=len(graphs))
        return graphs

    def load_from_dir(self, directory: Union[str, Path]) -> list[FlowGraph]:
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("flow_dir_missing", path=str(directory))
            return []
        graphs: list[FlowGraph] = []
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() in (".yaml", ".yml", ".json"):
                graphs.extend(self.load_from_file(path))
        return graphs

    def load_paths(self, paths: list[str]) -> list[FlowGraph]:
        """Load every file or directory listed under `flows:` in settings."""
        graphs: list[FlowGraph] = []
        for p in paths:
            path = Path(p)
            if path.is_dir():
                graphs.extend(self.load_from_dir(path))
            elif path.exists():
                graphs.extend(self.load_from_file(path))
            else:
                logger.warning("flow_path_missing", path=p)
        return graphs

    def reload(self, flow_id: str) -> FlowGraph:
        """Re-read the flow's source file and activate it as a new version."""
        path = self._sources.get(flow_id)
        if path is None:
            raise UnknownFlowError(flow_id)
        for doc in self._read_documents(path):
            if str(doc.get("id")) == flow_id:
                graph = self.activate(doc)
                logger.info("flow_reloaded", flow_id=flow_id, version=graph.version)
                return graph
        raise UnknownFlowError(flow_id)
