"""
expense_services -- Transactional façade and collaborator adapters.

``ExpenseApprovalEngine`` is the entry point transport layers call; the
rest of the package supplies its default collaborators.
"""

from expense_services.approval_engine import ExpenseApprovalEngine
from expense_services.identity import DirectoryIdentityProvider, bind_current_user
from expense_services.locks import KeyedLock
from expense_services.notifications import (
    InMemoryNotificationSink,
    LoggingNotificationSink,
    publish_all,
)
from expense_services.org_chart import DatabaseOrgChart, StaticOrgChart

__all__ = [
    "DatabaseOrgChart",
    "DirectoryIdentityProvider",
    "ExpenseApprovalEngine",
    "InMemoryNotificationSink",
    "KeyedLock",
    "LoggingNotificationSink",
    "StaticOrgChart",
    "bind_current_user",
    "publish_all",
]
