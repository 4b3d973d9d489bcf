"""
Expiry Sweeper
--------------
Marks open renewal conversations whose deadline passed as ``timeout``.
Sends nothing. Safe to re-run: timed-out rows drop out of the filter.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from renewals.config import require_batch_config
from renewals.conversation_store import ConversationStore
from renewals.run_logger import log_run
from renewals.runtime import SystemClock, get_logger, timed, to_iso
from renewals.schema import ActionTaken, ConversationState

logger = get_logger("expiry_sweeper")

RUN_TYPE = "RENEWAL_CLEANUP"


@timed("renewal_cleanup")
def sweep_expired_conversations(*, clock=None, conversations: Optional[ConversationStore] = None) -> Dict[str, Any]:
    require_batch_config(need_transport=False)
    clock = clock or SystemClock()
    conversations = conversations or ConversationStore()
    now = clock.now()

    expired = conversations.list_expired_open(now)
    logger.info("Found %s expired renewal conversations", len(expired))

    updated = 0
    for conv in expired:
        if conversations.transition(conv, ConversationState.TIMEOUT, now=now, action_taken=ActionTaken.TIMEOUT):
            updated += 1
        else:
            logger.error("Could not time out conversation %s", conv.id)

    summary = {"expiredFound": len(expired), "updatedCount": updated, "timestamp": to_iso(now)}
    log_run(RUN_TYPE, processed=updated, breakdown=summary, status="OK" if updated == len(expired) else "PARTIAL")
    return {"ok": True, "summary": summary}


if __name__ == "__main__":
    print(json.dumps(sweep_expired_conversations(), indent=2))
