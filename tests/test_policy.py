from __future__ import annotations

import logging

import pytest

from caportal.errors import DeniedError, IntegrityError, ValidationError
from caportal.models import AnalysisRecord, OrgScope
from caportal.policy import AccessPolicy, Capability, Decision
from caportal.store import InMemoryStore
from conftest import seed_portal


@pytest.fixture
def world():
    target = InMemoryStore()
    ids = seed_portal(target)
    return target, AccessPolicy(target), ids


def test_platform_admin_can_access_and_administer_every_org(world):
    _store, policy, ids = world
    for org_id in (ids.acme, ids.beta, "org_missing"):
        assert policy.can_access_org(ids.platform, org_id) is True
        assert policy.can_administer_org(ids.platform, org_id) is True
    assert policy.list_accessible_predicate(ids.platform) == OrgScope.everything()


def test_practitioner_access_follows_invitations(world):
    _store, policy, ids = world
    assert policy.can_access_org(ids.ca, ids.acme) is True
    assert policy.can_access_org(ids.ca, ids.beta) is False
    assert policy.can_access_org(ids.ca_other, ids.acme) is False
    assert policy.can_act_as_practitioner_on(ids.ca, ids.acme) is True
    assert policy.can_act_as_practitioner_on(ids.ca_other, ids.acme) is False
    assert policy.can_administer_org(ids.ca, ids.acme) is False


def test_org_scoped_roles_only_reach_their_primary_org(world):
    _store, policy, ids = world
    assert policy.can_access_org(ids.member, ids.acme) is True
    assert policy.can_access_org(ids.member, ids.beta) is False
    assert policy.can_access_org(ids.beta_rep, ids.acme) is False
    assert policy.can_act_as_practitioner_on(ids.member, ids.acme) is False


def test_representative_administers_without_being_listed_in_admins(world):
    target, policy, ids = world
    org = target.get_organization(ids.acme)
    assert ids.rep not in org.admins
    assert policy.can_administer_org(ids.rep, ids.acme) is True
    assert policy.can_administer_org(ids.admin, ids.acme) is True
    assert policy.can_administer_org(ids.member, ids.acme) is False
    assert policy.can_administer_org(ids.beta_rep, ids.acme) is False


def test_representative_scenario_rep_invites_then_practitioner_reads(world):
    target, policy, ids = world
    assert policy.can_access_org(ids.ca_other, ids.acme) is False
    policy.require(ids.rep, Capability.ADMINISTER, ids.acme)
    target.invite_practitioner(org_id=ids.acme, practitioner_id=ids.ca_other, invited_by=ids.rep)
    assert policy.can_access_org(ids.ca_other, ids.acme) is True
    assert policy.list_accessible_predicate(ids.ca_other).matches(ids.acme)


def test_revoke_takes_effect_on_the_next_decision(world):
    target, policy, ids = world
    account = target.get_account(ids.ca)
    assert policy.can_access_org(account, ids.acme) is True
    target.revoke_practitioner(org_id=ids.acme, practitioner_id=ids.ca)
    # the stale Account object is re-read by id
    assert policy.can_access_org(account, ids.acme) is False
    assert policy.decide(account, Capability.ACCESS, ids.acme) is Decision.DENIED
    assert not policy.list_accessible_predicate(ids.ca).matches(ids.acme)


def test_admin_mismatch_raises_integrity_error_and_fails_closed(world, caplog):
    target, policy, ids = world
    # listed as admin of acme but the role points elsewhere
    org = target.get_organization(ids.acme)
    org.admins.append(ids.beta_rep)
    target.organizations_repository.upsert(organization=org.to_row())

    with caplog.at_level(logging.ERROR, logger="caportal.policy"):
        with pytest.raises(IntegrityError):
            policy.can_administer_org(ids.beta_rep, ids.acme)
    assert any("access_integrity_violation" in r.getMessage() for r in caplog.records)
    assert policy.decide(ids.beta_rep, Capability.ADMINISTER, ids.acme) is Decision.DENIED
    with pytest.raises(DeniedError):
        policy.require(ids.beta_rep, Capability.ADMINISTER, ids.acme)


def test_org_admin_role_without_membership_is_an_integrity_violation(world):
    target, policy, ids = world
    org = target.get_organization(ids.acme)
    org.admins = []
    target.organizations_repository.upsert(organization=org.to_row())
    with pytest.raises(IntegrityError):
        policy.can_administer_org(ids.admin, ids.acme)
    assert policy.decide(ids.admin, "administer", ids.acme) is Decision.DENIED


def test_member_listed_as_admin_is_an_integrity_violation(world):
    target, policy, ids = world
    org = target.get_organization(ids.acme)
    org.admins.append(ids.member)
    target.organizations_repository.upsert(organization=org.to_row())
    with pytest.raises(IntegrityError):
        policy.can_administer_org(ids.member, ids.acme)


def test_stale_mirror_is_answered_from_the_org_and_repaired(world):
    target, policy, ids = world
    account = target.get_account(ids.ca)
    account.invited_orgs = []
    target.accounts_repository.upsert(account=account.to_row())

    assert policy.can_access_org(ids.ca, ids.acme) is True
    assert target.get_account(ids.ca).invited_orgs == [ids.acme]


def test_mirror_pointing_at_a_revoked_org_is_repaired(world):
    target, policy, ids = world
    account = target.get_account(ids.ca)
    account.invited_orgs = [ids.acme, ids.beta]
    target.accounts_repository.upsert(account=account.to_row())

    assert policy.can_access_org(ids.ca, ids.beta) is False
    assert target.get_account(ids.ca).invited_orgs == [ids.acme]


def test_unknown_and_inactive_accounts_are_denied(world):
    target, policy, ids = world
    assert policy.can_access_org("acc_nobody", ids.acme) is False
    assert policy.decide("acc_nobody", Capability.ACCESS, ids.acme) is Decision.DENIED
    assert policy.list_accessible_predicate("acc_nobody") == OrgScope.only([])

    target.delete_organization(ids.acme)
    assert policy.can_access_org(ids.member, ids.acme) is False
    assert policy.list_accessible_predicate(ids.member) == OrgScope.only([])


def test_require_platform_admin(world):
    _store, policy, ids = world
    policy.require_platform_admin(ids.platform)
    with pytest.raises(DeniedError):
        policy.require_platform_admin(ids.rep)


@pytest.mark.parametrize("primary_org", ["org_gamma", "org_elsewhere"])
def test_member_named_representative_administers_the_new_org(world, primary_org):
    target, policy, _ids = world
    target.create_account(
        {"account_id": "acc_g", "email": "g@gamma.test", "role": "ORG_MEMBER", "primary_org": primary_org}
    )
    target.create_organization({"org_id": "org_gamma", "name": "Gamma Co", "representative": "acc_g"})

    assert policy.decide("acc_g", Capability.ADMINISTER, "org_gamma") is Decision.ALLOWED
    assert policy.can_administer_org("acc_g", "org_gamma") is True


def test_representative_of_one_org_cannot_be_reused_for_another(world):
    target, policy, ids = world
    with pytest.raises(ValidationError, match="still administers organization org_acme"):
        target.create_organization({"org_id": "org_gamma", "name": "Gamma Co", "representative": ids.rep})
    with pytest.raises(ValidationError, match="still administers organization org_acme"):
        target.create_organization({"org_id": "org_gamma", "name": "Gamma Co", "representative": ids.admin})

    assert target.get_organization("org_gamma") is None
    assert target.get_account(ids.rep).primary_org == ids.acme
    assert policy.decide(ids.rep, Capability.ADMINISTER, ids.acme) is Decision.ALLOWED
    assert policy.decide(ids.admin, Capability.ADMINISTER, ids.acme) is Decision.ALLOWED


def test_private_notes_and_authorship_checks(world):
    target, policy, ids = world
    assert policy.sees_private_notes(ids.ca) is True
    assert policy.sees_private_notes(ids.platform) is True
    assert policy.sees_private_notes(ids.rep) is False
    assert policy.sees_private_notes(ids.member) is False

    record, _ = target.upsert_analysis(
        AnalysisRecord(analysis_id="an_1", organization_id=ids.acme, consolidated_payload={})
    )
    note = target.create_note(analysis=record, created_by=ids.ca, payload={"content": "x"})
    policy.require_note_author(ids.ca, note)
    target.invite_practitioner(org_id=ids.acme, practitioner_id=ids.ca_other, invited_by=ids.rep)
    with pytest.raises(DeniedError):
        policy.require_note_author(ids.ca_other, note)
    target.revoke_practitioner(org_id=ids.acme, practitioner_id=ids.ca)
    with pytest.raises(DeniedError):
        policy.require_note_author(ids.ca, note)
