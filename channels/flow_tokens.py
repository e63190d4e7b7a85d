"""
Flow Token Manager — completes template FLOW buttons before a send.

Provides:
- A unique flow token on every FLOW button (caller token, cached token,
  or a generated `auto_flow_token_<epoch-ms>_<random>`)
- Backfill of flow action parameters from defaults learned on earlier sends
  (matched by button index, then by button text); caller values always win
- FLOW buttons synthesized from the cached template when the caller sends none
- Write-back of learned defaults, skipped when nothing changed
- Template cache sync from the provider template list

Cache reads and writes are best-effort: a failing store degrades completion
to caller-supplied buttons only.
"""
from __future__ import annotations

import json
import re
import time
import uuid
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from database.store_base import BaseMessagingStore
from models.schemas import (
    FlowButtonDefault, FlowTokenUsage, Template, TemplateContent, utcnow,
)
from utils.side_effects import non_fatal

logger = structlog.get_logger()

# Action keys copied from cached defaults when the caller leaves them out
DEFAULT_ACTION_KEYS = (
    "flow_id", "flow_cta", "flow_action", "flow_name", "flow_redirect_url",
    "flow_message_version", "flow_action_data", "flow_action_payload",
    "flow_token_label",
)

# camelCase spellings seen in stored template definitions
_KEY_ALIASES = {
    "flowId": "flow_id",
    "flowCta": "flow_cta",
    "flowAction": "flow_action",
    "flowName": "flow_name",
    "flowActionData": "flow_action_data",
    "flowActionPayload": "flow_action_payload",
    "navigateScreen": "navigate_screen",
}

_PARAMETER_PATTERN = re.compile(r"\{\{([a-zA-Z0-9_]+)\}\}")


def generate_flow_token() -> str:
    return f"auto_flow_token_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def extract_parameters(text: str) -> list[str]:
    """`{{name}}` placeholders in order of first appearance."""
    seen: list[str] = []
    for name in _PARAMETER_PATTERN.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def is_flow_button(component: dict[str, Any]) -> bool:
    return (
        isinstance(component, dict)
        and str(component.get("type", "")).lower() == "button"
        and str(component.get("sub_type", "")).lower() == "flow"
    )


def _normalize_action(raw: dict[str, Any]) -> dict[str, Any]:
    action: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        key = _KEY_ALIASES.get(key, key)
        if value in (None, "") or key in action:
            continue
        action[key] = value
    if action.get("navigate_screen") and not action.get("flow_action_data"):
        action["flow_action_data"] = {"screen": action["navigate_screen"]}
    action.pop("navigate_screen", None)
    if action.get("flow_action"):
        action["flow_action"] = str(action["flow_action"]).lower()
    return action


def _snapshot(defaults: list[FlowButtonDefault]) -> str:
    return json.dumps(
        [d.model_dump(mode="json") for d in sorted(defaults, key=lambda d: d.index)],
        sort_keys=True,
    )


@dataclass
class FlowPreparation:
    button_params: list[dict[str, Any]] = field(default_factory=list)
    tokens: list[FlowTokenUsage] = field(default_factory=list)
    learned: list[FlowButtonDefault] = field(default_factory=list)
    defaults_written: bool = False

    @property
    def token_values(self) -> list[str]:
        return [t.token for t in self.tokens]

    @property
    def last_token(self) -> Optional[str]:
        return self.tokens[-1].token if self.tokens else None


class FlowTokenManager:
    def __init__(self, store: BaseMessagingStore):
        self.store = store

    # ── Prepare ───────────────────────────────────────────────

    async def prepare(
        self, template: TemplateContent, flow_token: Optional[str] = None,
    ) -> FlowPreparation:
        cached = await self._load_template(template.name)
        defaults = self._cached_defaults(cached)

        caller_buttons = [dict(b) for b in template.button_params if b]
        prep = FlowPreparation()

        if any(is_flow_button(b) for b in caller_buttons):
            for position, button in enumerate(caller_buttons):
                if is_flow_button(button):
                    button = self._complete(button, position, defaults, flow_token, prep)
                prep.button_params.append(button)
        else:
            prep.button_params.extend(caller_buttons)
            taken = {self._button_index(b, i) for i, b in enumerate(caller_buttons)}
            for default in defaults:
                if default.index in taken:
                    continue
                button = {
                    "type": "button",
                    "sub_type": "flow",
                    "index": str(default.index),
                    "parameters": [],
                }
                prep.button_params.append(
                    self._complete(button, default.index, defaults, flow_token, prep)
                )

        if prep.learned:
            prep.defaults_written = await self._persist_defaults(
                template.name, cached, prep.learned,
            )
        return prep

    def _complete(
        self,
        button: dict[str, Any],
        position: int,
        defaults: list[FlowButtonDefault],
        flow_token: Optional[str],
        prep: FlowPreparation,
    ) -> dict[str, Any]:
        index = self._button_index(button, position)
        parameters = [dict(p) for p in button.get("parameters") or []]
        slot = next(
            (i for i, p in enumerate(parameters) if str(p.get("type", "")).lower() == "action"),
            None,
        )
        if slot is None:
            parameters.append({"type": "action", "action": {}})
            slot = len(parameters) - 1

        caller_action = _normalize_action(parameters[slot].get("action") or {})
        text = button.get("text") or caller_action.get("flow_cta")
        default = self._match_default(defaults, index, text)
        default_action = _normalize_action(default.action) if default else {}

        action = dict(caller_action)
        for key in DEFAULT_ACTION_KEYS:
            if key not in action and key in default_action:
                action[key] = default_action[key]
        if not action.get("flow_cta") and default and default.text:
            action["flow_cta"] = default.text

        token = (
            caller_action.get("flow_token")
            or flow_token
            or default_action.get("flow_token")
            or generate_flow_token()
        )
        action["flow_token"] = token

        parameters[slot] = {"type": "action", "action": action}
        completed = {
            **{k: v for k, v in button.items() if k != "text"},
            "type": "button",
            "sub_type": "flow",
            "index": str(index),
            "parameters": parameters,
        }

        label = text or action.get("flow_cta") or (default.text if default else None)
        prep.tokens.append(FlowTokenUsage(
            index=index, text=label, token=token, assigned_at=utcnow().isoformat(),
        ))
        learned_action = {k: action[k] for k in DEFAULT_ACTION_KEYS if k in action}
        if learned_action:
            prep.learned.append(FlowButtonDefault(index=index, text=label, action=learned_action))
        return completed

    @staticmethod
    def _button_index(button: dict[str, Any], position: int) -> int:
        try:
            return int(button.get("index", position))
        except (TypeError, ValueError):
            return position

    @staticmethod
    def _match_default(
        defaults: list[FlowButtonDefault], index: int, text: Optional[str],
    ) -> Optional[FlowButtonDefault]:
        for default in defaults:
            if default.index == index:
                return default
        if text:
            wanted = text.strip()
            for default in defaults:
                if default.text and default.text.strip() == wanted:
                    return default
        return None

    # ── Template cache ────────────────────────────────────────

    async def _load_template(self, name: str) -> Optional[Template]:
        cached = None
        async with non_fatal("flow_defaults_read", template=name):
            cached = await self.store.get_template(name)
        return cached

    @staticmethod
    def _cached_defaults(cached: Optional[Template]) -> list[FlowButtonDefault]:
        """Stored flow defaults first, then FLOW buttons of the stored components."""
        if cached is None:
            return []
        defaults = list(cached.flow_defaults)
        known = {d.index for d in defaults}
        for component in cached.components:
            if str(component.get("type", "")).lower() != "buttons":
                continue
            for position, btn in enumerate(component.get("buttons") or []):
                if str(btn.get("type", "")).lower() != "flow":
                    continue
                index = btn["index"] if isinstance(btn.get("index"), int) else position
                if index in known:
                    continue
                action = {k: v for k, v in btn.items() if k not in ("type", "text", "index")}
                defaults.append(FlowButtonDefault(index=index, text=btn.get("text"), action=action))
                known.add(index)
        return defaults

    async def _persist_defaults(
        self, name: str, cached: Optional[Template], learned: list[FlowButtonDefault],
    ) -> bool:
        existing = list(cached.flow_defaults) if cached else []
        merged = {d.index: d for d in existing}
        for entry in learned:
            previous = merged.get(entry.index)
            if previous is None:
                merged[entry.index] = entry
            else:
                merged[entry.index] = FlowButtonDefault(
                    index=entry.index,
                    text=entry.text or previous.text,
                    action={**previous.action, **entry.action},
                )
        updated = sorted(merged.values(), key=lambda d: d.index)
        if _snapshot(updated) == _snapshot(existing):
            return False

        written = False
        async with non_fatal("flow_defaults_write", template=name):
            await self.store.update_template_flow_defaults(name, updated)
            written = True
            logger.info("flow_defaults_learned", template=name, buttons=len(updated))
        return written

    # ── Sync ──────────────────────────────────────────────────

    async def sync_templates(self, client) -> int:
        """Upsert every provider template into the cache, keeping learned defaults."""
        synced = 0
        for raw in await client.list_templates():
            name = raw.get("name")
            if not name:
                continue
            components = raw.get("components") or []
            body = next(
                (c.get("text", "") for c in components
                 if str(c.get("type", "")).lower() == "body"),
                "",
            )
            existing = await self.store.get_template(name)
            await self.store.upsert_template(Template(
                name=name,
                language=raw.get("language", "en_US"),
                category=raw.get("category", ""),
                status=raw.get("status", ""),
                body=body,
                components=components,
                variables=extract_parameters(body),
                flow_defaults=existing.flow_defaults if existing else [],
            ))
            synced += 1
        logger.info("templates_synced", count=synced)
        return synced
