"""
Payload Builder — turns a SendRequest into the provider's wire envelope.

Pure construction, no I/O. Every envelope carries exactly one content key
matching its `type`:

    text         {"text": {"body", "preview_url"}}
    media        {"<kind>": {"id" | "link", "caption"?, "filename"?}}
    interactive  {"interactive": {"type", "body"?, "header"?, "footer"?, "action"}}
    reaction     {"reaction": {"message_id", "emoji"}}
    template     {"template": {"name", "language": {"code"}, "components"?}}

Template `components` are attached only when at least one component has
parameters; the provider rejects an empty `components` array, so the key
is omitted entirely for zero-variable templates.
"""
from __future__ import annotations

from typing import Any, Optional

from channels.base import InvalidRequest
from models.schemas import (
    InteractiveContent, InteractiveKind, MediaContent, MediaKind,
    ReactionContent, SendRequest, TemplateContent,
)

MAX_REPLY_BUTTONS = 3

_CAPTION_KINDS = {MediaKind.IMAGE, MediaKind.VIDEO, MediaKind.DOCUMENT}


def _envelope(to: str, message_type: str, content: dict[str, Any]) -> dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to,
        "type": message_type,
        message_type: content,
    }


def build_payload(
    request: SendRequest,
    to: Optional[str] = None,
    button_params: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    """
    Build the wire envelope for `request`.

    `to` overrides the request's destination (the Dispatcher passes the
    normalized number); `button_params` overrides the template's button
    components (the Flow Token Manager's completed buttons).
    """
    kinds = request.content_kinds
    if not kinds:
        raise InvalidRequest("One of message, media, interactive, reaction or template is required")
    if len(kinds) > 1:
        raise InvalidRequest(f"Only one content kind may be sent at a time, got: {', '.join(kinds)}")

    destination = to or request.to
    if not destination:
        raise InvalidRequest("Destination number is required")

    kind = kinds[0]
    if kind == "text":
        return build_text(destination, request.message, request.preview_url)
    if kind == "media":
        return build_media(destination, request.media)
    if kind == "interactive":
        return build_interactive(destination, request.interactive)
    if kind == "reaction":
        return build_reaction(destination, request.reaction)
    return build_template(destination, request.template, button_params)


# ── Text ──────────────────────────────────────────────────────

def build_text(to: str, body: str, preview_url: bool = False) -> dict[str, Any]:
    if not body or not body.strip():
        raise InvalidRequest("Text message body is empty")
    return _envelope(to, "text", {"body": body, "preview_url": bool(preview_url)})


# ── Media ─────────────────────────────────────────────────────

def build_media(to: str, media: MediaContent) -> dict[str, Any]:
    kind = MediaKind(media.kind)
    content: dict[str, Any] = {}
    if media.id:
        content["id"] = media.id
    elif media.link:
        content["link"] = media.link
    else:
        raise InvalidRequest(f"{kind.value} message needs a media id or link")

    if media.caption and kind in _CAPTION_KINDS:
        content["caption"] = media.caption
    if media.filename and kind == MediaKind.DOCUMENT:
        content["filename"] = media.filename
    return _envelope(to, kind.value, content)


# ── Interactive ───────────────────────────────────────────────

def _text_header(text: Optional[str]) -> Optional[dict[str, Any]]:
    return {"type": "text", "text": text} if text else None


def build_interactive(to: str, interactive: InteractiveContent) -> dict[str, Any]:
    kind = InteractiveKind(interactive.kind)
    builders = {
        InteractiveKind.BUTTON: _button_action,
        InteractiveKind.LIST: _list_action,
        InteractiveKind.PRODUCT: _product_action,
        InteractiveKind.PRODUCT_LIST: _product_list_action,
    }
    action = builders[kind](interactive)

    content: dict[str, Any] = {"type": kind.value}
    header = _text_header(interactive.header)

    if kind == InteractiveKind.PRODUCT_LIST and header is None:
        # the provider requires a header on product lists
        first_title = next(
            (s.title for s in interactive.product_sections if s.title), None,
        )
        if not first_title:
            raise InvalidRequest("product_list needs a header or a titled first section")
        header = _text_header(first_title)

    if header:
        content["header"] = header

    if interactive.body:
        content["body"] = {"text": interactive.body}
    elif kind != InteractiveKind.PRODUCT:
        raise InvalidRequest(f"interactive {kind.value} message needs a body")

    if interactive.footer:
        content["footer"] = {"text": interactive.footer}
    content["action"] = action
    return _envelope(to, "interactive", content)


def _button_action(interactive: InteractiveContent) -> dict[str, Any]:
    buttons = interactive.buttons
    if not buttons:
        raise InvalidRequest("button message needs at least one reply button")
    if len(buttons) > MAX_REPLY_BUTTONS:
        raise InvalidRequest(f"button message allows at most {MAX_REPLY_BUTTONS} reply buttons")
    return {
        "buttons": [
            {"type": "reply", "reply": {"id": b.id, "title": b.title}}
            for b in buttons
        ],
    }


def _list_action(interactive: InteractiveContent) -> dict[str, Any]:
    if not interactive.button_text:
        raise InvalidRequest("list message needs button_text")
    sections = [s for s in interactive.sections if s.rows]
    if not sections:
        raise InvalidRequest("list message needs at least one section with rows")
    out = []
    for section in sections:
        rows = []
        for row in section.rows:
            entry = {"id": row.id, "title": row.title}
            if row.description:
                entry["description"] = row.description
            rows.append(entry)
        item: dict[str, Any] = {"rows": rows}
        if section.title:
            item["title"] = section.title
        out.append(item)
    return {"button": interactive.button_text, "sections": out}


def _product_action(interactive: InteractiveContent) -> dict[str, Any]:
    if not interactive.catalog_id or not interactive.product_retailer_id:
        raise InvalidRequest("product message needs catalog_id and product_retailer_id")
    return {
        "catalog_id": interactive.catalog_id,
        "product_retailer_id": interactive.product_retailer_id,
    }


def _product_list_action(interactive: InteractiveContent) -> dict[str, Any]:
    if not interactive.catalog_id:
        raise InvalidRequest("product_list message needs catalog_id")
    sections = [s for s in interactive.product_sections if s.product_retailer_ids]
    if not sections:
        raise InvalidRequest("product_list message needs at least one section with products")
    out = []
    for position, section in enumerate(sections):
        out.append({
            "title": section.title or f"Section {position + 1}",
            "product_items": [
                {"product_retailer_id": pid} for pid in section.product_retailer_ids
            ],
        })
    return {"catalog_id": interactive.catalog_id, "sections": out}


# ── Reaction ──────────────────────────────────────────────────

def build_reaction(to: str, reaction: ReactionContent) -> dict[str, Any]:
    if not reaction.message_id:
        raise InvalidRequest("reaction needs the message_id it reacts to")
    # an empty emoji removes a previous reaction
    return _envelope(to, "reaction", {
        "message_id": reaction.message_id,
        "emoji": reaction.emoji,
    })


# ── Template ──────────────────────────────────────────────────

def _text_parameter(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {"type": "text", "text": str(value)}


def build_template_components(
    template: TemplateContent,
    button_params: Optional[list[dict[str, Any]]] = None,
) -> list[dict[str, Any]]:
    components: list[dict[str, Any]] = []
    if template.header_params:
        components.append({
            "type": "header",
            "parameters": [_text_parameter(v) for v in template.header_params],
        })
    if template.body_params:
        components.append({
            "type": "body",
            "parameters": [_text_parameter(v) for v in template.body_params],
        })
    buttons = template.button_params if button_params is None else button_params
    components.extend(b for b in buttons or [] if b)
    return components


def build_template(
    to: str,
    template: TemplateContent,
    button_params: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    if not template.name:
        raise InvalidRequest("template send needs a template name")
    content: dict[str, Any] = {
        "name": template.name,
        "language": {"code": template.language or "en_US"},
    }
    components = build_template_components(template, button_params)
    if components:
        content["components"] = components
    return _envelope(to, "template", content)


# ── Preview ───────────────────────────────────────────────────

def render_preview(request: SendRequest) -> str:
    """Human-readable text stored on the Message record."""
    if request.message is not None:
        return request.message
    if request.media is not None:
        media = request.media
        label = media.caption or media.link or media.id or ""
        return f"[{MediaKind(media.kind).value}] {label}".strip()
    if request.interactive is not None:
        interactive = request.interactive
        if interactive.body:
            return interactive.body
        return f"[interactive:{InteractiveKind(interactive.kind).value}]"
    if request.reaction is not None:
        return f"Reaction {request.reaction.emoji}".strip()
    if request.template is not None:
        template = request.template
        if template.body_params:
            values = " | ".join(str(v) for v in template.body_params)
            return f"Template {template.name} :: {values}"
        return f"[template:{template.name}]"
    return "[message]"
