from __future__ import annotations

import html
import re
from collections.abc import Mapping
from typing import Any

_MERGE_TAG_RE = re.compile(r"\{\{\s*([a-zA-Z_][\w]*(?:\.[a-zA-Z_][\w]*)?)\s*\}\}")


def render_merge_tags(template: str, context: Mapping[str, Any], *, escape: bool = False) -> str:
    """Replace ``{{scope.key}}`` and ``{{key}}`` tags found in ``context``.

    Known tags without a value render as an empty string; unknown tags are left
    untouched. With ``escape`` the substituted values are HTML-escaped.
    """

    def _replace(match: re.Match[str]) -> str:
        path = match.group(1)
        scope, _, key = path.partition(".")
        value: Any
        if key:
            bucket = context.get(scope)
            if not isinstance(bucket, Mapping) or key not in bucket:
                return match.group(0)
            value = bucket[key]
        else:
            if scope not in context or isinstance(context[scope], Mapping):
                return match.group(0)
            value = context[scope]
        text = "" if value is None else str(value)
        return html.escape(text) if escape else text

    return _MERGE_TAG_RE.sub(_replace, template)
