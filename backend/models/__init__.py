"""
Pydantic models for vendor discovery
"""

from .conversation import ConversationPart, ConversationTurn, DiscoveryConversation
from .discovery import (
    DiscoveryJob, DiscoveryRun, DiscoveryResult, DiscoveryLogEntry,
    RunStatus, RunTrigger, SchedulerConfig, TERMINAL_RUN_STATUSES,
)
from .vendor import DiscoveredVendor, StagedVendor, StagedVendorStatus, WebsiteVerification

__all__ = [
    "ConversationPart", "ConversationTurn", "DiscoveryConversation",
    "DiscoveryJob", "DiscoveryRun", "DiscoveryResult", "DiscoveryLogEntry",
    "RunStatus", "RunTrigger", "SchedulerConfig", "TERMINAL_RUN_STATUSES",
    "DiscoveredVendor", "StagedVendor", "StagedVendorStatus", "WebsiteVerification",
]
