"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - other models have relationships to User
from receipt_nest.modules.identity.models import User  # noqa: F401

from receipt_nest.modules.merchants.models import Merchant  # noqa: F401
from receipt_nest.modules.receipts.models import Receipt  # noqa: F401
