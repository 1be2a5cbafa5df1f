"""Database models."""

from teamguard.models.team import Team
from teamguard.models.user import User, Role
from teamguard.models.revoked_token import RevokedToken, UserRevocationCutoff, RevocationReason
from teamguard.models.permission import PermissionGrant, Capability
from teamguard.models.integration_credential import IntegrationCredential, CredentialType, Provider
from teamguard.models.sync_log import SyncLog, SyncStatus, SyncType, SourceSystem

__all__ = [
    # Tenancy
    "Team",
    # Users
    "User",
    "Role",
    # Revocation ledger
    "RevokedToken",
    "UserRevocationCutoff",
    "RevocationReason",
    # Permissions
    "PermissionGrant",
    "Capability",
    # Integrations
    "IntegrationCredential",
    "CredentialType",
    "Provider",
    # Sync journal
    "SyncLog",
    "SyncStatus",
    "SyncType",
    "SourceSystem",
]
