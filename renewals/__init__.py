"""
🏠 Listing Renewal SMS Engine
-----------------------------
Reminds listing owners by SMS before their listings expire and applies
their YES/NO replies (extend, deactivate, attribution) to the listings store.
"""

from renewals.config import settings

__all__ = ["settings"]
