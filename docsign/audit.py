from __future__ import annotations
import logging
from docsign.util import json_dumps

logger = logging.getLogger("docsign.audit")


def audit(actor: str, action: str, meta: dict, session_id: str | None = None, document_id: str | None = None):
    logger.info("action=%s actor=%s session=%s document=%s meta=%s", action, actor, session_id or "-", document_id or "-", json_dumps(meta))


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
