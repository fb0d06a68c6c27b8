"""Error hierarchy shared by the engine, the orchestrator and the bot registry."""
from __future__ import annotations


class BotFlowError(Exception):
    """Base exception for all BotFlow operations."""


class UnknownTenantError(BotFlowError, LookupError):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"No bot registered for tenant '{tenant_id}'")


class DialogConfigError(BotFlowError, ValueError):
    """A dialog definition is inconsistent (undeclared state, bad start state, …)."""


class DuplicateRegistrationError(DialogConfigError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} '{name}' already registered")
