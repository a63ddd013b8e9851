from datetime import date, timedelta
from decimal import Decimal

import pytest

from portal.asset_service import create_asset, delete_asset, get_asset, list_assets, set_asset_status, update_asset
from portal.billing_service import create_manual_invoice, generate_monthly_invoices, record_manual_payment
from portal.catalog_service import update_package
from portal.errors import AssetInUse, Forbidden, NotFound, ValidationError
from portal.extensions import db
from portal.models import Asset, AssetStatus
from portal.user_service import set_user_status


def _asset_payload(catalog, **overrides):
    payload = {"name": "shop.example.com", "category_id": catalog.hosting.id, "package_id": catalog.package.id}
    payload.update(overrides)
    return payload


def _invoice_for(admin, asset, amount="10.00"):
    due = (date.today() + timedelta(days=14)).isoformat()
    return create_manual_invoice(
        admin, {"user_id": asset.user_id, "asset_id": asset.id, "amount": amount, "due_date": due}
    )


class TestCreateAsset:
    def test_client_creates_own_asset(self, client, catalog):
        asset = create_asset(
            client,
            client.id,
            _asset_payload(catalog, business_name="Acme Ltd", billing_email="billing@example.com"),
        )

        assert asset.user_id == client.id
        assert asset.status == AssetStatus.ACTIVE
        assert asset.subscribed_price == Decimal("99.99")
        assert asset.billing_contact_email == "billing@example.com"

    def test_billing_contact_falls_back_to_owner(self, asset):
        assert asset.billing_contact_email == "client@example.com"

    def test_client_cannot_create_for_someone_else(self, client, other, catalog):
        with pytest.raises(Forbidden):
            create_asset(client, other.id, _asset_payload(catalog))

    def test_admin_must_name_the_owner(self, admin, catalog):
        with pytest.raises(ValidationError) as excinfo:
            create_asset(admin, None, _asset_payload(catalog))
        assert "user_id" in excinfo.value.errors

    def test_admin_creates_for_approved_client(self, admin, client, catalog):
        asset = create_asset(admin, client.id, _asset_payload(catalog, status="suspended"))

        assert asset.user_id == client.id
        assert asset.status == AssetStatus.SUSPENDED

    def test_owner_must_be_approved(self, admin, pending_user, catalog):
        with pytest.raises(ValidationError):
            create_asset(admin, pending_user.id, _asset_payload(catalog))

    def test_package_must_match_category(self, client, catalog):
        with pytest.raises(ValidationError) as excinfo:
            create_asset(client, client.id, _asset_payload(catalog, package_id=catalog.domain_package.id))
        assert "package_id" in excinfo.value.errors

    def test_inactive_package_is_rejected(self, admin, client, catalog):
        update_package(admin, catalog.package.id, {"name": "Business Hosting", "price": "99.99",
                                                   "category_id": catalog.hosting.id, "is_active": False})
        with pytest.raises(ValidationError):
            create_asset(client, client.id, _asset_payload(catalog))


class TestAssetStatus:
    def test_owner_toggles_active_and_inactive(self, client, asset):
        assert set_asset_status(client, asset.id, "inactive").status == AssetStatus.INACTIVE
        assert set_asset_status(client, asset.id, "active").status == AssetStatus.ACTIVE

    def test_admin_moves_any_to_any(self, admin, asset):
        for status in (AssetStatus.SUSPENDED, AssetStatus.INACTIVE, AssetStatus.SUSPENDED, AssetStatus.ACTIVE):
            assert set_asset_status(admin, asset.id, status.value).status == status

    def test_owner_cannot_suspend(self, client, asset):
        with pytest.raises(Forbidden):
            set_asset_status(client, asset.id, "suspended")
        assert db.session.get(Asset, asset.id).status == AssetStatus.ACTIVE

    def test_owner_cannot_lift_a_suspension(self, admin, client, catalog, asset):
        set_asset_status(admin, asset.id, "suspended")

        with pytest.raises(Forbidden):
            set_asset_status(client, asset.id, "active")
        with pytest.raises(Forbidden):
            update_asset(client, asset.id, _asset_payload(catalog, status="active"))
        assert db.session.get(Asset, asset.id).status == AssetStatus.SUSPENDED

    def test_owner_edits_suspended_asset_without_touching_status(self, admin, client, catalog, asset):
        set_asset_status(admin, asset.id, "suspended")

        updated = update_asset(client, asset.id, _asset_payload(catalog, name="renamed.example.com"))

        assert updated.name == "renamed.example.com"
        assert updated.status == AssetStatus.SUSPENDED

    def test_client_cannot_create_suspended_asset(self, client, catalog):
        with pytest.raises(Forbidden):
            create_asset(client, client.id, _asset_payload(catalog, status="suspended"))

    def test_owner_cannot_revive_an_archived_asset(self, admin, client, asset):
        invoice = _invoice_for(admin, asset)
        record_manual_payment(admin, invoice.id, {"amount": "12.40"})
        assert delete_asset(admin, asset.id) == "archived"

        with pytest.raises(Forbidden):
            set_asset_status(client, asset.id, "active")

        archived = db.session.get(Asset, asset.id)
        assert archived.status == AssetStatus.INACTIVE
        assert archived.archived_at is not None
        assert generate_monthly_invoices(admin, today=date.today() + timedelta(days=40)).created == []

    def test_admin_can_restore_an_archived_asset(self, admin, asset):
        invoice = _invoice_for(admin, asset)
        record_manual_payment(admin, invoice.id, {"amount": "12.40"})
        delete_asset(admin, asset.id)

        restored = set_asset_status(admin, asset.id, "active")

        assert restored.status == AssetStatus.ACTIVE
        assert restored.archived_at is None

    def test_other_clients_cannot_change_status(self, other, asset):
        with pytest.raises(Forbidden):
            set_asset_status(other, asset.id, "suspended")
        assert db.session.get(Asset, asset.id).status == AssetStatus.ACTIVE

    def test_admin_changes_any_asset(self, admin, asset):
        assert set_asset_status(admin, asset.id, "inactive").status == AssetStatus.INACTIVE

    def test_unknown_status(self, client, asset):
        with pytest.raises(ValidationError):
            set_asset_status(client, asset.id, "deleted")


class TestUpdateAsset:
    def test_changing_package_snapshots_new_price(self, client, catalog, asset):
        updated = update_asset(
            client, asset.id, _asset_payload(catalog, category_id=catalog.domains.id,
                                             package_id=catalog.domain_package.id)
        )

        assert updated.package_id == catalog.domain_package.id
        assert updated.subscribed_price == Decimal("15.00")

    def test_price_snapshot_survives_package_repricing(self, admin, client, catalog, asset):
        update_package(admin, catalog.package.id, {"name": "Business Hosting", "price": "120.00",
                                                   "category_id": catalog.hosting.id})

        updated = update_asset(client, asset.id, _asset_payload(catalog, name="renamed.example.com"))

        assert updated.name == "renamed.example.com"
        assert updated.subscribed_price == Decimal("99.99")

    def test_other_clients_cannot_edit(self, other, catalog, asset):
        with pytest.raises(Forbidden):
            update_asset(other, asset.id, _asset_payload(catalog))


class TestVisibility:
    def test_clients_only_see_their_assets(self, client, other, admin, catalog, asset):
        create_asset(other, other.id, _asset_payload(catalog, name="other.example.com"))

        assert [a.id for a in list_assets(client)] == [asset.id]
        assert len(list_assets(admin)) == 2
        assert [a.id for a in list_assets(admin, user_id=client.id)] == [asset.id]

    def test_foreign_asset_is_not_found(self, other, asset):
        with pytest.raises(NotFound):
            get_asset(other, asset.id)

    def test_suspending_owner_keeps_assets(self, admin, client_user, asset):
        set_user_status(admin, client_user.id, "suspended")

        assert db.session.get(Asset, asset.id).status == AssetStatus.ACTIVE


class TestDeleteAsset:
    def test_unused_asset_is_deleted(self, admin, asset):
        asset_id = asset.id

        assert delete_asset(admin, asset_id) == "deleted"
        assert db.session.get(Asset, asset_id) is None

    def test_open_invoice_blocks_delete(self, admin, asset):
        _invoice_for(admin, asset)

        with pytest.raises(AssetInUse) as excinfo:
            delete_asset(admin, asset.id)
        assert excinfo.value.details["open_invoices"] == 1

    def test_asset_with_history_is_archived(self, admin, client, asset):
        invoice = _invoice_for(admin, asset)
        record_manual_payment(admin, invoice.id, {"amount": "12.40"})

        assert delete_asset(admin, asset.id) == "archived"

        archived = db.session.get(Asset, asset.id)
        assert archived.status == AssetStatus.INACTIVE
        assert archived.archived_at is not None
        assert list_assets(client) == []
        assert [a.id for a in list_assets(admin, include_archived=True)] == [asset.id]

    def test_archived_asset_is_read_only(self, admin, client, catalog, asset):
        invoice = _invoice_for(admin, asset)
        record_manual_payment(admin, invoice.id, {"amount": "12.40"})
        delete_asset(admin, asset.id)

        with pytest.raises(ValidationError):
            update_asset(client, asset.id, _asset_payload(catalog))

    def test_clients_cannot_delete(self, client, asset):
        with pytest.raises(Forbidden):
            delete_asset(client, asset.id)
