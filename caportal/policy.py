from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from caportal.errors import DeniedError, IntegrityError
from caportal.models import Account, Organization, OrgScope, Role

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    ACCESS = "access"
    ADMINISTER = "administer"
    ACT_AS_PRACTITIONER = "act_as_practitioner"


class Decision(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class AccessPolicy:
    """Role-dispatched access decisions over accounts and organizations.

    Every call re-reads the actor from the store, so a revoke or an admin
    removal is visible to the very next decision. A decision reads at most
    the account and the organization.

    The organization record is authoritative for practitioner invitations.
    When the account's ``invited_orgs`` mirror disagrees, the answer comes
    from the organization and the store is asked to heal the mirror.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def _load(self, actor: Account | str) -> Account | None:
        account_id = actor.account_id if isinstance(actor, Account) else str(actor)
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            return None
        return account

    def _practitioner_invited(self, account: Account, org: Organization | None, org_id: str) -> bool:
        invited = org is not None and org.has_invited(account.account_id)
        mirrored = org_id in account.invited_orgs
        if invited != mirrored:
            self.store.sync_practitioner_mirror(
                account_id=account.account_id,
                org_id=org_id,
                invited=invited,
            )
        return invited

    def can_access_org(self, actor: Account | str, org_id: str) -> bool:
        account = self._load(actor)
        if account is None:
            return False
        if account.role is Role.PLATFORM_ADMIN:
            return True
        if account.role is Role.PRACTITIONER:
            org = self.store.get_organization(org_id)
            return self._practitioner_invited(account, org, org_id)
        return account.primary_org == org_id

    def can_administer_org(self, actor: Account | str, org_id: str) -> bool:
        account = self._load(actor)
        if account is None:
            return False
        if account.role is Role.PLATFORM_ADMIN:
            return True
        if account.role is Role.PRACTITIONER:
            return False
        org = self.store.get_organization(org_id)
        if org is None:
            return False
        by_role = account.role is Role.ORG_ADMIN and account.primary_org == org_id
        by_membership = org.is_admin(account.account_id)
        if by_role != by_membership:
            logger.error(
                "access_integrity_violation account_id=%s org_id=%s role=%s by_role=%s by_membership=%s",
                account.account_id,
                org_id,
                account.role.value,
                by_role,
                by_membership,
            )
            raise IntegrityError(
                "organization admin role and membership disagree",
                account_id=account.account_id,
                org_id=org_id,
            )
        return by_role

    def can_act_as_practitioner_on(self, actor: Account | str, org_id: str) -> bool:
        account = self._load(actor)
        if account is None or account.role is not Role.PRACTITIONER:
            return False
        org = self.store.get_organization(org_id)
        return self._practitioner_invited(account, org, org_id)

    def sees_private_notes(self, actor: Account | str) -> bool:
        account = self._load(actor)
        return account is not None and account.role in (Role.PRACTITIONER, Role.PLATFORM_ADMIN)

    def require_note_author(self, actor: Account | str, note: Any) -> None:
        """Writes on an existing note need practitioner standing on its organization and authorship."""
        account_id = actor.account_id if isinstance(actor, Account) else str(actor)
        self.require(actor, Capability.ACT_AS_PRACTITIONER, note.organization_id)
        if note.created_by != account_id:
            logger.info("access_denied account_id=%s capability=note_author note_id=%s", account_id, note.note_id)
            raise DeniedError()

    def list_accessible_predicate(self, actor: Account | str) -> OrgScope:
        account = self._load(actor)
        if account is None:
            return OrgScope.only([])
        if account.role is Role.PLATFORM_ADMIN:
            return OrgScope.everything()
        if account.role is Role.PRACTITIONER:
            return OrgScope.only(account.invited_orgs)
        return OrgScope.only([account.primary_org] if account.primary_org else [])

    def is_platform_admin(self, actor: Account | str) -> bool:
        account = self._load(actor)
        return account is not None and account.role is Role.PLATFORM_ADMIN

    def require_platform_admin(self, actor: Account | str) -> None:
        if not self.is_platform_admin(actor):
            account_id = actor.account_id if isinstance(actor, Account) else str(actor)
            logger.info("access_denied account_id=%s capability=platform_admin", account_id)
            raise DeniedError()

    def decide(self, actor: Account | str, capability: Capability | str, org_id: str) -> Decision:
        capability = Capability(capability)
        try:
            if capability is Capability.ACCESS:
                allowed = self.can_access_org(actor, org_id)
            elif capability is Capability.ADMINISTER:
                allowed = self.can_administer_org(actor, org_id)
            else:
                allowed = self.can_act_as_practitioner_on(actor, org_id)
        except IntegrityError:
            # fail closed; the defect was already logged where it was detected
            return Decision.DENIED
        return Decision.ALLOWED if allowed else Decision.DENIED

    def require(self, actor: Account | str, capability: Capability | str, org_id: str) -> None:
        decision = self.decide(actor, capability, org_id)
        if decision is Decision.DENIED:
            account_id = actor.account_id if isinstance(actor, Account) else str(actor)
            logger.info(
                "access_denied account_id=%s capability=%s org_id=%s",
                account_id,
                Capability(capability).value,
                org_id,
            )
            raise DeniedError()
