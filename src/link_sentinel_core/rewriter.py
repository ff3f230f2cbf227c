from __future__ import annotations

import html
import logging
import re

from link_sentinel_core.errors import PersistenceFailure
from link_sentinel_core.models import Document
from link_sentinel_core.store import DocumentStore

logger = logging.getLogger(__name__)


def replace_href(body: str, original: str, replacement: str) -> str:
    """
    Replace the href attribute value `original` with `replacement`.

    Both the raw and the entity-decoded form of `original` are matched, in
    double- and single-quoted attributes. Only the value changes: the
    attribute name, spacing and quote character are kept as written. The
    replacement is attribute-escaped exactly once.
    """
    if not body or not original:
        return body

    replacement_attr = html.escape(html.unescape(replacement), quote=True)

    variants: list[str] = []
    for value in (original, html.unescape(original)):
        if value and value not in variants:
            variants.append(value)

    for value in variants:
        pattern = re.compile(rf"""(\bhref\s*=\s*)(["']){re.escape(value)}\2""", re.IGNORECASE)
        body = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{replacement_attr}{m.group(2)}", body)
    return body


def commit_body(store: DocumentStore, document: Document, new_body: str) -> bool:
    """
    Persist a rewritten body. Returns True when the store accepted a change,
    False when there was nothing to write.

    A store failure is logged and re-raised as PersistenceFailure so the
    caller can abandon the record it was working on.
    """
    if new_body == document.body:
        return False
    try:
        store.commit_body(document.id, new_body)
    except PersistenceFailure:
        logger.warning("commit_body failed document_id=%s", document.id)
        raise
    return True
