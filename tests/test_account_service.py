from __future__ import annotations

import pytest

from identity_service.domain.contracts import AccountInput, ExternalUserInfo, ProfileInput
from identity_service.errors import (
    AdminInvariantViolation,
    DuplicateResource,
    InvalidCredential,
    NotAllowed,
    ResourceNotFound,
    ValidationError,
)


def test_create_account_round_trip(service, repository):
    created = service.create_account(
        AccountInput(email="Jane.Doe@Example.COM", password="pw", roles=["AUDITOR", "GHOST"], first_name="Jane")
    )

    loaded = repository.find_by_email("jane.doe@example.com")
    assert loaded.account_id == created.account_id
    assert loaded.email == "jane.doe@example.com"
    assert loaded.role_names() == {"AUDITOR"}
    assert loaded.first_name == "Jane"
    assert loaded.nonce and len(loaded.nonce) == 8
    assert loaded.password_reset_token is None
    assert "account.created" in repository.event_types()


def test_create_account_without_roles_gets_default_role(service, repository):
    created = service.create_account(AccountInput(email="plain@example.com", password="pw"))

    assert repository.stored(created.account_id).role_names() == {"USER"}


def test_create_account_rejects_duplicate_email(service, member):
    with pytest.raises(DuplicateResource):
        service.create_account(AccountInput(email="MEMBER@example.com", password="pw"))


def test_create_without_password_issues_reset_token(service, repository, notifier):
    created = service.create_account(AccountInput(email="invitee@example.com"))

    stored = repository.stored(created.account_id)
    assert stored.password_reset_token
    assert stored.password_hash is not None
    assert notifier.of_kind("new_account") == [
        ("new_account", "invitee@example.com", stored.password_reset_token, "de")
    ]

    service.redeem_password_reset(stored.password_reset_token, "chosen-password")

    redeemed = repository.stored(created.account_id)
    assert redeemed.password_reset_token is None
    assert not redeemed.login_disabled
    assert service.authenticate("invitee@example.com", "chosen-password", _ctx())


def test_create_succeeds_when_new_account_mail_fails(service, repository, notifier, caplog):
    notifier.fail = True

    created = service.create_account(AccountInput(email="offline@example.com"))

    assert repository.get_account(created.account_id) is not None
    assert "failed to send" in caplog.text


def test_external_account_has_no_credential(service, repository, notifier):
    created = service.create_external_account(
        ExternalUserInfo(username="SSO.User@Example.com", first_name="Sso"), "oidc"
    )

    stored = repository.stored(created.account_id)
    assert stored.email == "sso.user@example.com"
    assert stored.source == "oidc"
    assert stored.password_hash is None
    assert stored.password_reset_token is None
    assert stored.role_names() == {"USER"}
    assert notifier.sent == []


def test_update_keeps_nonce_without_password(service, repository, admin, member):
    updated = service.update_account(
        member.account_id,
        AccountInput(email=member.email, roles=["AUDITOR"], first_name="Renamed"),
    )

    stored = repository.stored(member.account_id)
    assert updated.nonce == member.nonce
    assert stored.nonce == member.nonce
    assert stored.password_hash == member.password_hash
    assert stored.first_name == "Renamed"
    assert stored.role_names() == {"AUDITOR"}


def test_update_with_password_rotates_nonce(service, repository, admin, member):
    service.update_account(member.account_id, AccountInput(email=member.email, password="rotated"))

    stored = repository.stored(member.account_id)
    assert stored.nonce != member.nonce
    assert stored.password_hash != member.password_hash


def test_update_preserves_source_and_reset_token(service, repository, admin):
    external = service.create_external_account(ExternalUserInfo(username="ext@example.com"), "oidc")

    service.update_account(
        external.account_id,
        AccountInput(email="ext@example.com", password="ignored", source="local"),
    )

    stored = repository.stored(external.account_id)
    assert stored.source == "oidc"
    assert stored.password_hash is None


def test_update_clears_roles_before_reattaching(service, repository, admin, member):
    repository.role_writes.clear()

    service.update_account(member.account_id, AccountInput(email=member.email, roles=["AUDITOR"]))

    assert repository.role_writes == [(member.account_id, ["AUDITOR"])]


def test_update_unknown_account(service):
    with pytest.raises(ResourceNotFound):
        service.update_account("missing", AccountInput(email="x@example.com"))


def test_update_removing_last_admin_is_rejected_without_changes(service, repository, admin):
    with pytest.raises(AdminInvariantViolation):
        service.update_account(
            admin.account_id,
            AccountInput(email=admin.email, roles=["USER"], first_name="Changed", password="other"),
        )

    stored = repository.stored(admin.account_id)
    assert stored.role_names() == {"ADMIN"}
    assert stored.first_name is None
    assert stored.nonce == admin.nonce
    assert "account.updated" not in repository.event_types()


def test_update_can_demote_admin_when_another_admin_exists(service, repository, admin, member):
    service.patch_account(member.account_id, {"roles": ["ADMIN"]})

    service.update_account(admin.account_id, AccountInput(email=admin.email, roles=["USER"]))

    assert repository.stored(admin.account_id).role_names() == {"USER"}


def test_patch_ignores_unknown_and_protected_keys(service, repository, member):
    service.patch_account(
        member.account_id,
        {"first_name": "James", "nonce": "123456", "source": "oidc", "password_reset_token": "x"},
    )

    stored = repository.stored(member.account_id)
    assert stored.first_name == "James"
    assert stored.nonce == member.nonce
    assert stored.source == "local"
    assert stored.password_reset_token is None


def test_patch_password_rotates_nonce_and_other_fields_do_not(service, repository, member):
    service.patch_account(member.account_id, {"phone": "+49 721 000"})
    assert repository.stored(member.account_id).nonce == member.nonce

    service.patch_account(member.account_id, {"password": "patched"})
    stored = repository.stored(member.account_id)
    assert stored.nonce != member.nonce
    assert service.authenticate(member.email, "patched", _ctx())


@pytest.mark.parametrize(
    "roles",
    [["AUDITOR"], [{"name": "AUDITOR"}]],
)
def test_patch_accepts_role_names_and_maps(service, repository, admin, member, roles):
    service.patch_account(member.account_id, {"roles": roles})

    assert repository.stored(member.account_id).role_names() == {"AUDITOR"}


def test_patch_with_unknown_role_name_resolves_to_default(service, repository, admin, member):
    service.patch_account(member.account_id, {"roles": ["SUPERADMIN"]})

    assert repository.stored(member.account_id).role_names() == {"USER"}


def test_patch_rejects_malformed_roles(service, member):
    with pytest.raises(ValidationError):
        service.patch_account(member.account_id, {"roles": "ADMIN"})


def test_patch_unknown_admin_role_on_sole_admin_is_rejected(service, repository, admin):
    with pytest.raises(AdminInvariantViolation):
        service.patch_account(admin.account_id, {"roles": ["ADMIN-TYPO"], "first_name": "X"})

    stored = repository.stored(admin.account_id)
    assert stored.role_names() == {"ADMIN"}
    assert stored.first_name is None


def test_patch_rejects_wrongly_typed_fields(service, member):
    with pytest.raises(ValidationError):
        service.patch_account(member.account_id, {"login_disabled": "yes"})
    with pytest.raises(ValidationError):
        service.patch_account(member.account_id, {"first_name": 12})


def test_sole_admin_cannot_be_deleted_until_another_admin_exists(service, repository, admin, member):
    with pytest.raises(NotAllowed):
        service.delete_account(admin.account_id)
    assert repository.get_account(admin.account_id) is not None

    service.patch_account(member.account_id, {"roles": ["ADMIN"]})
    service.delete_account(admin.account_id)

    assert repository.get_account(admin.account_id) is None
    assert "account.deleted" in repository.event_types()


def test_delete_unknown_account(service):
    with pytest.raises(ResourceNotFound):
        service.delete_account("missing")


def test_delete_regular_account(service, repository, admin, member):
    service.delete_account(member.account_id)

    assert repository.get_account(member.account_id) is None


def test_guard_is_inactive_without_admin_roles(repository, role_store, notifier, settings):
    from identity_service.domain.roles import RoleCatalog
    from identity_service.domain.service import AccountService

    role_store.roles = [role for role in role_store.roles if not role.is_admin]
    service = AccountService(repository, RoleCatalog(role_store), notifier=notifier, settings=settings)
    only = service.create_account(AccountInput(email="only@example.com", password="pw"))

    service.delete_account(only.account_id)

    assert repository.get_account(only.account_id) is None


def test_update_password_requires_current_password(service, repository, member):
    with pytest.raises(InvalidCredential):
        service.update_password(member, "wrong", "new-password")

    updated = service.update_password(member, "member-secret", "new-password")

    assert updated.nonce != member.nonce
    assert service.authenticate(member.email, "new-password", _ctx())


def test_update_password_rejected_for_external_account(service):
    external = service.create_external_account(ExternalUserInfo(username="ext@example.com"), "saml")

    with pytest.raises(NotAllowed):
        service.update_password(external, "", "new-password")


def test_self_update_changes_profile_and_stages_email(service, repository, member, notifier):
    updated = service.self_update(
        member,
        ProfileInput(first_name="Max", last_name="Muster", locale="en", email="max@example.com"),
    )

    stored = repository.stored(member.account_id)
    assert updated.first_name == stored.first_name == "Max"
    assert stored.locale == "en"
    assert stored.email == "member@example.com"
    assert stored.email_to_verify == "max@example.com"
    assert notifier.of_kind("verify_email")[0][1] == "max@example.com"


def test_self_patch_rejects_fields_outside_allow_list(service, repository, member):
    with pytest.raises(ValidationError):
        service.self_patch(member, {"first_name": "Max", "roles": ["ADMIN"]})

    stored = repository.stored(member.account_id)
    assert stored.first_name is None
    assert stored.role_names() == {"USER"}


def test_self_patch_updates_allowed_fields(service, repository, member):
    service.self_patch(member, {"mobile": "+49 170 000", "first_name": "Max"})

    stored = repository.stored(member.account_id)
    assert stored.mobile == "+49 170 000"
    assert stored.first_name == "Max"
    assert stored.nonce == member.nonce


def _ctx():
    from identity_service.domain.contracts import ClientContext

    return ClientContext(user_agent="pytest")


def test_patch_password_on_external_account_is_ignored(service, repository, admin):
    external = service.create_external_account(ExternalUserInfo(username="ext@example.com"), "oidc")

    service.patch_account(external.account_id, {"password": "x", "first_name": "Ext"})

    stored = repository.stored(external.account_id)
    assert stored.password_hash is None
    assert stored.nonce == external.nonce
    assert stored.first_name == "Ext"


def test_update_password_on_external_account_is_ignored(service, repository, admin):
    external = service.create_external_account(ExternalUserInfo(username="ext@example.com"), "saml")

    service.update_account(
        external.account_id,
        AccountInput(email="ext@example.com", password="x", roles=["USER"]),
    )

    stored = repository.stored(external.account_id)
    assert stored.password_hash is None
    assert stored.nonce == external.nonce
    assert stored.source == "saml"
