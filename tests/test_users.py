import pytest
from sqlalchemy import text

from conftest import PASSWORD, make_user, ticket_payload
from portal.access import SYSTEM_PRINCIPAL, Principal, Role
from portal.asset_service import create_asset
from portal.email_service import pop_warnings
from portal.errors import (
    ConflictingState,
    DuplicateKey,
    Forbidden,
    InvalidTransition,
    LastAdminError,
    Unauthorized,
    UserInUse,
    ValidationError,
)
from portal.extensions import db
from portal.models import ActivityLog, User, UserStatus
from portal.settings_service import update_settings
from portal.ticket_service import append_message, create_ticket
from portal.user_service import (
    authenticate,
    change_password,
    create_super_admin,
    create_user_as_admin,
    delete_user,
    demote_super_admin,
    list_super_admins,
    list_users,
    promote_to_super_admin,
    register_user,
    set_user_status,
    update_profile,
)


def _registration(**overrides):
    payload = {"first_name": "Ana", "last_name": "Berg", "email": "Ana.Berg@Example.com", "password": PASSWORD}
    payload.update(overrides)
    return payload


class TestRegistration:
    def test_new_registration_is_pending(self, app):
        user = register_user(_registration())

        assert user.status == UserStatus.PENDING
        assert user.admin_role is None
        assert user.email == "ana.berg@example.com"
        assert user.check_password(PASSWORD)

    def test_registration_mail_failure_becomes_warning(self, app):
        register_user(_registration())

        warnings = pop_warnings()
        assert any("registration_received" in warning for warning in warnings)

    def test_duplicate_email_is_rejected(self, app, client_user):
        with pytest.raises(DuplicateKey):
            register_user(_registration(email="CLIENT@example.com"))

    def test_weak_password_is_rejected(self, app):
        with pytest.raises(ValidationError) as excinfo:
            register_user(_registration(password="password"))
        assert "password" in excinfo.value.errors

    def test_admin_created_user_defaults_to_approved(self, admin):
        user = create_user_as_admin(admin, _registration())
        assert user.status == UserStatus.APPROVED

        pending = create_user_as_admin(admin, _registration(email="later@example.com", status="pending"))
        assert pending.status == UserStatus.PENDING

    def test_clients_cannot_create_users(self, client):
        with pytest.raises(Forbidden):
            create_user_as_admin(client, _registration())


class TestStatusWorkflow:
    def test_approve_pending_user(self, admin, pending_user):
        user = set_user_status(admin, pending_user.id, "approved")

        assert user.status == UserStatus.APPROVED
        assert user.admin_role is None
        assert any("account_approved" in warning for warning in pop_warnings())

    def test_repeating_current_status_is_a_noop(self, admin, pending_user):
        set_user_status(admin, pending_user.id, "approved")
        version = db.session.get(User, pending_user.id).version_id

        user = set_user_status(admin, pending_user.id, "approved")

        assert user.status == UserStatus.APPROVED
        assert user.version_id == version

    def test_stale_version_raises_conflict(self, admin, pending_user):
        assert pending_user.status == UserStatus.PENDING
        # Another admin acted on the account after it was loaded here
        db.session.execute(text("UPDATE users SET version_id = version_id + 1 WHERE id = :id"), {"id": pending_user.id})

        with pytest.raises(ConflictingState):
            set_user_status(admin, pending_user.id, "approved")

        assert db.session.get(User, pending_user.id).status == UserStatus.PENDING
        assert pop_warnings() == []

    def test_invalid_transition_leaves_state_untouched(self, admin, pending_user):
        with pytest.raises(InvalidTransition):
            set_user_status(admin, pending_user.id, "suspended")

        assert db.session.get(User, pending_user.id).status == UserStatus.PENDING

    def test_rejected_is_terminal(self, admin, pending_user):
        set_user_status(admin, pending_user.id, "rejected")

        for status in ("approved", "suspended", "pending"):
            with pytest.raises(InvalidTransition):
                set_user_status(admin, pending_user.id, status)

    def test_suspend_and_reactivate(self, admin, client_user):
        assert set_user_status(admin, client_user.id, "suspended").status == UserStatus.SUSPENDED
        assert set_user_status(admin, client_user.id, "approved").status == UserStatus.APPROVED

    def test_unknown_status_is_a_validation_error(self, admin, client_user):
        with pytest.raises(ValidationError):
            set_user_status(admin, client_user.id, "banned")

    def test_super_admin_must_be_demoted_first(self, admin, admin_user):
        with pytest.raises(InvalidTransition):
            set_user_status(admin, admin_user.id, "suspended")

    def test_clients_cannot_change_status(self, client, pending_user):
        with pytest.raises(Forbidden):
            set_user_status(client, pending_user.id, "approved")

    def test_status_change_is_audited(self, admin, pending_user):
        set_user_status(admin, pending_user.id, "approved")

        entry = ActivityLog.query.filter_by(action="user_status_changed").one()
        assert entry.actor_id == admin.id
        assert entry.old_values == {"status": "pending"}
        assert entry.new_values == {"status": "approved"}


class TestAuthentication:
    def test_approved_client_signs_in(self, client_user):
        principal = authenticate("Client@Example.com", PASSWORD)

        assert principal.id == client_user.id
        assert principal.role == Role.CLIENT
        assert db.session.get(User, client_user.id).last_login is not None

    def test_unknown_email(self, app):
        with pytest.raises(Unauthorized):
            authenticate("nobody@example.com", PASSWORD)

    def test_pending_account_cannot_sign_in(self, pending_user):
        with pytest.raises(Unauthorized):
            authenticate(pending_user.email, PASSWORD)

    def test_suspended_account_is_forbidden(self, app):
        user = make_user("suspended@example.com", status=UserStatus.SUSPENDED)
        with pytest.raises(Forbidden):
            authenticate(user.email, PASSWORD)

    def test_repeated_failures_lock_the_account(self, app, client_user):
        for _ in range(app.config["LOGIN_MAX_FAILURES"]):
            with pytest.raises(Unauthorized):
                authenticate(client_user.email, "Wrong#1234")

        with pytest.raises(Unauthorized) as excinfo:
            authenticate(client_user.email, PASSWORD)
        assert "Too many" in excinfo.value.message

    def test_successful_login_resets_failures(self, client_user):
        with pytest.raises(Unauthorized):
            authenticate(client_user.email, "Wrong#1234")

        authenticate(client_user.email, PASSWORD)

        assert db.session.get(User, client_user.id).failed_login_attempts == 0


class TestSuperAdmins:
    def test_promote_approved_user(self, admin, client_user):
        user = promote_to_super_admin(admin, client_user.id)

        assert user.is_super_admin
        assert promote_to_super_admin(admin, client_user.id).is_super_admin
        assert {u.id for u in list_super_admins(admin)} == {admin.id, client_user.id}

    def test_pending_user_cannot_be_promoted(self, admin, pending_user):
        with pytest.raises(InvalidTransition):
            promote_to_super_admin(admin, pending_user.id)

    def test_last_super_admin_cannot_be_demoted(self, admin, admin_user):
        with pytest.raises(LastAdminError):
            demote_super_admin(admin, admin_user.id)

        assert db.session.get(User, admin_user.id).is_super_admin

    def test_demote_when_another_admin_remains(self, admin, client_user):
        promote_to_super_admin(admin, client_user.id)

        user = demote_super_admin(admin, client_user.id)

        assert not user.is_super_admin
        assert user.status == UserStatus.APPROVED

    def test_demoting_a_client_is_a_noop(self, admin, client_user):
        assert not demote_super_admin(admin, client_user.id).is_super_admin

    def test_create_super_admin(self, admin):
        user = create_super_admin(admin, _registration(email="second.admin@example.com"))

        assert user.is_super_admin
        assert user.status == UserStatus.APPROVED


class TestDeletion:
    def test_cannot_delete_self(self, admin):
        with pytest.raises(Forbidden):
            delete_user(admin, admin.id)

    def test_last_super_admin_cannot_be_deleted(self, admin_user):
        with pytest.raises(LastAdminError):
            delete_user(SYSTEM_PRINCIPAL, admin_user.id)

    def test_user_with_records_is_kept(self, admin, client, catalog):
        create_asset(client, client.id, {"name": "Shop", "category_id": catalog.hosting.id,
                                         "package_id": catalog.package.id})

        with pytest.raises(UserInUse) as excinfo:
            delete_user(admin, client.id)

        assert excinfo.value.details["references"]["assets"] == 1
        assert db.session.get(User, client.id) is not None

    def test_delete_user_without_records(self, admin, pending_user):
        user_id = pending_user.id
        delete_user(admin, user_id)

        assert db.session.get(User, user_id) is None

    def test_authored_history_blocks_deletion(self, admin, client):
        colleague = make_user("colleague@example.com", admin=True)
        actor = Principal.from_user(colleague)
        ticket = create_ticket(client, ticket_payload())
        append_message(actor, ticket.id, "Looking into it now.")
        update_settings(actor, {"payment_terms": 21})
        db.session.execute(text("PRAGMA foreign_keys=ON"))

        with pytest.raises(UserInUse) as excinfo:
            delete_user(admin, colleague.id)

        references = excinfo.value.details["references"]
        assert references["ticket_messages"] == 1
        assert references["settings_updated"] == 1
        assert references["assets"] == 0
        assert db.session.get(User, colleague.id) is not None

    def test_activity_trail_survives_deletion_with_foreign_keys_enforced(self, admin, pending_user):
        colleague = make_user("colleague@example.com", admin=True)
        set_user_status(Principal.from_user(colleague), pending_user.id, "approved")
        colleague_id = colleague.id
        db.session.execute(text("PRAGMA foreign_keys=ON"))

        delete_user(admin, colleague_id)

        entry = ActivityLog.query.filter_by(action="user_status_changed", entity_id=pending_user.id).one()
        assert entry.actor_id is None
        assert entry.actor_email == "colleague@example.com"
        assert db.session.get(User, colleague_id) is None


class TestListing:
    def test_filter_by_status_and_search(self, admin, client_user, pending_user):
        assert [u.id for u in list_users(admin, status="pending")] == [pending_user.id]
        assert [u.id for u in list_users(admin, search="chris")] == [client_user.id]

    def test_unknown_status_filter(self, admin):
        with pytest.raises(ValidationError):
            list_users(admin, status="nope")


class TestProfile:
    def test_update_profile(self, client):
        user = update_profile(client, {"first_name": "Christa", "last_name": "Client", "email": "Christa@Example.com"})

        assert user.first_name == "Christa"
        assert user.email == "christa@example.com"

    def test_email_clash(self, client, other_user):
        with pytest.raises(DuplicateKey):
            update_profile(client, {"first_name": "C", "last_name": "C", "email": other_user.email})

    def test_change_password(self, client, client_user):
        change_password(client, {"current_password": PASSWORD, "new_password": "Another#456"})

        assert db.session.get(User, client_user.id).check_password("Another#456")

    def test_wrong_current_password(self, client):
        with pytest.raises(ValidationError) as excinfo:
            change_password(client, {"current_password": "Wrong#1234", "new_password": "Another#456"})
        assert "current_password" in excinfo.value.errors

    def test_new_password_must_differ(self, client):
        with pytest.raises(ValidationError):
            change_password(client, {"current_password": PASSWORD, "new_password": PASSWORD})

    def test_unapproved_principal_is_unauthorized(self, pending_user):
        with pytest.raises(Unauthorized):
            update_profile(Principal.from_user(pending_user), {"first_name": "P", "last_name": "P",
                                                                "email": pending_user.email})
