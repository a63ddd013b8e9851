from types import SimpleNamespace

import pytest

from portal import create_app
from portal.access import Principal
from portal.asset_service import create_asset
from portal.catalog_service import create_category, create_package
from portal.email_service import pop_warnings, seed_default_templates
from portal.extensions import db
from portal.models import AdminRole, User, UserStatus

PASSWORD = "Secret#123"


def make_user(email, *, status=UserStatus.APPROVED, admin=False, first_name="Test", last_name="User"):
    user = User(
        first_name=first_name,
        last_name=last_name,
        email=email,
        status=status,
        admin_role=AdminRole.SUPER_ADMIN if admin else None,
    )
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user


def ticket_payload(**overrides):
    payload = {
        "title": "Mail is down",
        "description": "Outgoing mail has bounced since Monday morning.",
        "category": "support",
        "priority": "high",
        "price_type": "with_package",
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def app(tmp_path):
    app = create_app("testing")
    app.config["UPLOAD_FOLDER"] = str(tmp_path / "uploads")
    with app.app_context():
        db.drop_all()
        db.create_all()
        seed_default_templates()
        pop_warnings()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def http(app):
    return app.test_client()


@pytest.fixture()
def admin_user(app):
    return make_user("admin@example.com", admin=True, first_name="Ada", last_name="Admin")


@pytest.fixture()
def admin(admin_user):
    return Principal.from_user(admin_user)


@pytest.fixture()
def client_user(app):
    return make_user("client@example.com", first_name="Chris", last_name="Client")


@pytest.fixture()
def client(client_user):
    return Principal.from_user(client_user)


@pytest.fixture()
def other_user(app):
    return make_user("other@example.com", first_name="Olga", last_name="Other")


@pytest.fixture()
def other(other_user):
    return Principal.from_user(other_user)


@pytest.fixture()
def pending_user(app):
    return make_user("pending@example.com", status=UserStatus.PENDING, first_name="Pat")


@pytest.fixture()
def catalog(admin):
    hosting = create_category(admin, {"name": "Hosting", "color": "blue"})
    domains = create_category(admin, {"name": "Domains"})
    package = create_package(
        admin,
        {
            "name": "Business Hosting",
            "price": "99.99",
            "category_id": hosting.id,
            "billing_cycle": "monthly",
            "features": ["Daily backups", "SSL"],
        },
    )
    domain_package = create_package(
        admin, {"name": "Domain Renewal", "price": "15.00", "category_id": domains.id, "billing_cycle": "yearly"}
    )
    return SimpleNamespace(hosting=hosting, domains=domains, package=package, domain_package=domain_package)


@pytest.fixture()
def asset(client, catalog):
    return create_asset(
        client,
        client.id,
        {"name": "acme.example.com", "category_id": catalog.hosting.id, "package_id": catalog.package.id},
    )


@pytest.fixture()
def login(http):
    def _login(email, password=PASSWORD):
        return http.post("/api/auth/login", json={"email": email, "password": password})

    return _login
