from __future__ import annotations

import html
import logging
import re
from typing import Any, Mapping

from mailcourier.core.errors import TemplateRenderError
from mailcourier.domain.models import EmailTemplate, RenderedEmail


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"{{\s*(\w+)\s*}}")
_TAG = re.compile(r"<[^>]*>")
_BLANK_RUN = re.compile(r"\n\s*\n+")


def _substitute(text: str, variables: Mapping[str, Any]) -> str:
    # Unknown placeholders render as empty strings rather than leaking braces to recipients.
    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, text)


def strip_html(markup: str) -> str:
    text = _TAG.sub("", markup)
    text = html.unescape(text)
    return _BLANK_RUN.sub("\n\n", text).strip()


def render_template(template: EmailTemplate, variables: Mapping[str, Any]) -> RenderedEmail:
    missing = [name for name in template.variables if name not in variables]
    if missing:
        logger.warning("template_variables_missing code=%s missing=%s", template.code, ",".join(missing))
    try:
        subject = _substitute(template.subject, variables)
        html_body = _substitute(template.html_body, variables)
        if template.text_body:
            text_body = _substitute(template.text_body, variables)
        else:
            text_body = strip_html(html_body)
    except Exception as exc:  # noqa: BLE001 - surface as a retryable render failure
        raise TemplateRenderError(f"Failed to render template {template.code}: {exc}") from exc
    return RenderedEmail(subject=subject.strip(), html_body=html_body, text_body=text_body)
