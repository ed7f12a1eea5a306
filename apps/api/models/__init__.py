"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_ledger import ActionType, CreditLedger
from .search_session import SearchSession
from .search_charged_row import SearchChargedRow
from .enrichment_run import EnrichmentRun, EnrichmentStatus
