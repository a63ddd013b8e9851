from portal.extensions import db
from portal.models import AdminRole, Invoice, User, UserStatus


def test_generate_monthly(app, asset):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["billing", "generate-monthly", "--date", "2026-03-01"])
    assert result.exit_code == 0
    assert "Created 1 invoice(s), skipped 0." in result.output

    again = runner.invoke(args=["billing", "generate-monthly", "--date", "2026-03-01"])
    assert "Created 0 invoice(s), skipped 1." in again.output


def test_reclassify_overdue(app):
    result = app.test_cli_runner().invoke(args=["billing", "reclassify-overdue"])

    assert result.exit_code == 0
    assert "0 invoice(s) marked overdue." in result.output
    assert Invoice.query.count() == 0


def test_create_super_admin(app):
    result = app.test_cli_runner().invoke(
        args=["portal", "create-super-admin", "--email", "Ops@Example.com", "--password", "Secret#123"]
    )
    assert result.exit_code == 0
    assert "Super admin ops@example.com ready." in result.output

    db.session.expire_all()
    user = User.query.filter_by(email="ops@example.com").one()
    assert user.admin_role == AdminRole.SUPER_ADMIN
    assert user.status == UserStatus.APPROVED
    assert user.check_password("Secret#123")


def test_create_super_admin_promotes_existing_account(app, pending_user):
    result = app.test_cli_runner().invoke(
        args=["portal", "create-super-admin", "--email", pending_user.email, "--password", "Other#123"]
    )
    assert result.exit_code == 0

    db.session.expire_all()
    assert User.query.count() == 1
    promoted = User.query.filter_by(email=pending_user.email).one()
    assert promoted.admin_role == AdminRole.SUPER_ADMIN
    assert promoted.status == UserStatus.APPROVED
