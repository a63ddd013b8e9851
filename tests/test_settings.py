from decimal import Decimal

import pytest

from portal.audit import list_activity
from portal.errors import Forbidden, ValidationError
from portal.settings_service import (
    get_settings,
    normalize_vat_rate,
    public_settings,
    ticket_price,
    update_settings,
    vat_rate,
)


class TestVatRate:
    @pytest.mark.parametrize("raw", ["24", 24, "0.24", Decimal("24.00")])
    def test_fraction_and_percentage_mean_the_same(self, raw):
        assert normalize_vat_rate(raw) == Decimal("24.00")

    def test_zero_is_allowed(self):
        assert normalize_vat_rate("0") == Decimal("0.00")

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            normalize_vat_rate("101")


class TestSystemSettings:
    def test_defaults_come_from_config(self, app):
        settings = get_settings()

        assert settings["vat_rate"] == "24.00"
        assert settings["currency"] == "EUR"
        assert settings["payment_terms"] == 30

    def test_update_normalizes_vat(self, admin):
        updated = update_settings(admin, {"vat_rate": "0.17", "company_name": "  Kubik IKE  "})

        assert updated["vat_rate"] == "17.00"
        assert updated["company_name"] == "Kubik IKE"
        assert vat_rate() == Decimal("17.00")

    def test_omitted_keys_are_untouched(self, admin):
        update_settings(admin, {"payment_terms": 14})
        update_settings(admin, {"currency": "USD"})

        settings = get_settings()
        assert settings["payment_terms"] == 14
        assert settings["currency"] == "USD"

    def test_ticket_prices(self, admin):
        update_settings(admin, {"ticket_price_with_package": "30"})

        assert ticket_price("with_package") == Decimal("30.00")

    def test_invalid_vat(self, admin):
        with pytest.raises(ValidationError) as excinfo:
            update_settings(admin, {"vat_rate": "150"})
        assert "vat_rate" in excinfo.value.errors

    def test_clients_cannot_update(self, client):
        with pytest.raises(Forbidden):
            update_settings(client, {"vat_rate": "10"})

    def test_public_settings_hide_bank_details(self, admin):
        update_settings(admin, {"bank_iban": "GR1601101250000000012300695"})

        public = public_settings()
        assert "bank_iban" not in public
        assert public["vat_rate"] == "24.00"

    def test_updates_are_audited(self, admin):
        update_settings(admin, {"vat_rate": "20"})

        entry = list_activity(admin, action="settings_updated")[0]
        assert entry.old_values == {"vat_rate": "24.00"}
        assert entry.new_values == {"vat_rate": "20.00"}

    def test_activity_log_is_admin_only(self, client):
        with pytest.raises(Forbidden):
            list_activity(client)
