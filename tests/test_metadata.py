"""
Tests for the metadata registry: categories, payment methods, trips,
default currency and server snapshots.
"""

from datetime import date
from uuid import uuid4

import pytest

from voice_ledger.ledger import Ledger
from voice_ledger.metadata import MetadataRegistry
from voice_ledger.metadata.registry import (
    default_categories,
    merge_remote_categories,
    normalize_keywords,
)
from voice_ledger.models.expense import (
    CategoryDefinition,
    MetadataSnapshot,
    ParseStatus,
    PaymentMethod,
    PaymentMethodType,
    TripRecord,
    TripStatus,
)

from conftest import FIXED_NOW, make_expense


@pytest.fixture
def registry(clock) -> MetadataRegistry:
    registry = MetadataRegistry(clock=clock)
    registry.seed_defaults_if_needed()
    return registry


class TestDefaults:
    def test_seeds_eight_categories_once(self, registry):
        """Eight default categories are seeded once."""
        assert len(registry.categories) == 8
        assert "Other" in registry.category_names
        assert registry.seed_defaults_if_needed() is False

    def test_default_currency_falls_back(self):
        """Unknown currency codes fall back to USD."""
        assert MetadataRegistry(MetadataSnapshot(default_currency_code="zzz")).default_currency_code == "USD"
        assert MetadataRegistry(default_currency="mxn").default_currency_code == "MXN"

    def test_normalize_keywords(self):
        """Keywords are split on commas, lower-cased, deduplicated and sorted."""
        assert normalize_keywords(["Uber, Lyft", " uber ", ""]) == ["lyft", "uber"]


class TestCategories:
    """Category CRUD and its effect on saved expenses."""

    def test_add_is_case_insensitive_unique(self, registry):
        """Category names are unique ignoring case."""
        assert registry.add_category("food") is None
        pets = registry.add_category("  Pets ", hints=["vet, dog food"])
        assert pets.name == "Pets"
        assert pets.hint_keywords == ["dog food", "vet"]
        assert registry.category_named("PETS").id == pets.id

    def test_custom_categories_sort_after_defaults(self, registry):
        """Custom categories follow the defaults."""
        registry.add_category("Aardvarks")
        assert registry.category_names[-1] == "Aardvarks"

    def test_rename_relabels_expenses(self, registry):
        """Renaming a category relabels its expenses."""
        food = registry.category_named("Food")
        expense = make_expense(category="Food", category_id=food.id)
        ledger = Ledger([expense])

        assert registry.update_category(food.id, "Dining", ["restaurant"], ledger) is True

        assert ledger.get(expense.id).category == "Dining"
        assert registry.category_named("Dining").hint_keywords == ["restaurant"]

    def test_rename_to_existing_name_rejected(self, registry):
        """A rename onto another category's name is refused."""
        food = registry.category_named("Food")
        assert registry.update_category(food.id, "transport", [], Ledger()) is False

    def test_remove_moves_expenses_to_other(self, registry):
        """Removing a category moves its expenses to Other."""
        food = registry.category_named("Food")
        other = registry.category_named("Other")
        expense = make_expense(category="Food", category_id=food.id)
        ledger = Ledger([expense])

        assert registry.remove_category(food.id, ledger) is True

        moved = ledger.get(expense.id)
        assert moved.category == "Other"
        assert moved.category_id == other.id
        assert moved.parse_status == ParseStatus.EDITED
        assert registry.category_named("Food") is None

    def test_other_cannot_be_removed(self, registry):
        """Other and unknown ids cannot be removed."""
        other = registry.category_named("Other")
        assert registry.remove_category(other.id, Ledger()) is False
        assert registry.remove_category(uuid4(), Ledger()) is False


class TestPaymentMethods:
    def test_add_inserts_first(self, registry):
        """New payment methods go to the front of the list."""
        registry.add_payment_method("Visa")
        amex = registry.add_payment_method(
            "Amex Gold",
            method_type=PaymentMethodType.CREDIT_CARD,
            network=" ",
            last4="1004",
            aliases=["Amex, gold card"],
        )
        assert registry.payment_methods[0].id == amex.id
        assert amex.network is None
        assert amex.aliases == ["amex", "gold card"]

    def test_blank_name_rejected(self, registry):
        """Blank names are refused."""
        assert registry.add_payment_method("   ") is None

    def test_rename_updates_expenses(self, registry):
        """Renaming a card updates the name on its expenses."""
        card = registry.add_payment_method("Visa")
        expense = make_expense(payment_method_id=card.id, payment_method_name="Visa")
        ledger = Ledger([expense])

        registry.update_payment_method(card.model_copy(update={"name": "Visa Platinum"}), ledger)

        assert ledger.get(expense.id).payment_method_name == "Visa Platinum"

    def test_remove_clears_references(self, registry):
        """Removing a card clears it from expenses."""
        card = registry.add_payment_method("Visa")
        expense = make_expense(payment_method_id=card.id, payment_method_name="Visa")
        ledger = Ledger([expense])

        assert registry.remove_payment_method(card.id, ledger) is True

        cleared = ledger.get(expense.id)
        assert cleared.payment_method_id is None
        assert cleared.payment_method_name is None
        assert registry.remove_payment_method(card.id, ledger) is False

    def test_update_unknown_method(self, registry):
        """Updating an unknown method reports False."""
        assert registry.update_payment_method(PaymentMethod(name="Ghost"), Ledger()) is False


class TestTrips:
    """At most one trip is active."""

    def test_new_trip_becomes_active(self, registry):
        """A new trip starts today and becomes active."""
        trip = registry.add_trip("Lisbon", destination="Portugal")
        assert registry.active_trip_id == trip.id
        assert trip.status == TripStatus.ACTIVE
        assert trip.start_date == FIXED_NOW.date()

    def test_second_trip_completes_first(self, registry):
        """Adding a trip completes the previous active one."""
        first = registry.add_trip("Lisbon")
        second = registry.add_trip("Madrid")
        statuses = {t.id: t.status for t in registry.trips}
        assert statuses[first.id] == TripStatus.COMPLETED
        assert statuses[second.id] == TripStatus.ACTIVE
        assert registry.active_trip.id == second.id

    def test_planned_trip_keeps_current(self, registry):
        """Planned trips do not take over the active slot."""
        current = registry.add_trip("Lisbon")
        planned = registry.add_trip("Tokyo", set_active=False)
        assert registry.active_trip_id == current.id
        assert planned.status == TripStatus.PLANNED

    def test_select_trip(self, registry):
        """Selecting a trip activates it and completes the other."""
        first = registry.add_trip("Lisbon")
        second = registry.add_trip("Madrid")
        registry.select_trip(first.id)
        statuses = {t.id: t.status for t in registry.trips}
        assert statuses[first.id] == TripStatus.ACTIVE
        assert statuses[second.id] == TripStatus.COMPLETED

    def test_end_active_trip(self, registry):
        """Ending the active trip stamps its end date."""
        trip = registry.add_trip("Lisbon", start_date=date(2024, 3, 1))
        assert registry.end_active_trip() is True
        ended = registry.trips[0]
        assert ended.id == trip.id
        assert ended.status == TripStatus.COMPLETED
        assert ended.end_date == FIXED_NOW.date()
        assert registry.active_trip is None
        assert registry.end_active_trip() is False


class TestCurrency:
    def test_set_default_currency(self, registry):
        """Only valid, different codes change the default currency."""
        assert registry.set_default_currency("eur") is True
        assert registry.default_currency_code == "EUR"
        assert registry.set_default_currency("EUR") is False
        assert registry.set_default_currency("DOGE") is False


class TestRemoteSnapshots:
    """Applying the server's copy of the metadata."""

    def test_remote_categories_keep_missing_defaults(self):
        """Remote categories win but defaults missing remotely are kept."""
        local = default_categories()
        remote = [CategoryDefinition(name="food"), CategoryDefinition(name="Pets")]
        names = [c.name for c in merge_remote_categories(local, remote)]
        assert "food" in names
        assert "Food" not in names
        assert "Pets" in names
        assert "Other" in names

    def test_empty_remote_keeps_local(self):
        """An empty remote list leaves local categories alone."""
        local = default_categories()
        assert merge_remote_categories(local, []) == local

    def test_apply_remote(self, registry):
        """Remote trips, cards and currency replace local ones."""
        trip = TripRecord(name="Lisbon", status=TripStatus.ACTIVE)
        card = PaymentMethod(name="Visa")
        registry.apply_remote(MetadataSnapshot(
            trips=[trip],
            payment_methods=[card],
            active_trip_id=trip.id,
            default_currency_code="eur",
        ))
        assert registry.active_trip_id == trip.id
        assert registry.payment_methods == [card]
        assert registry.default_currency_code == "EUR"
        assert len(registry.categories) == 8

    def test_active_trip_cleared_when_missing_remotely(self, registry):
        """The active trip is dropped when the server lacks it."""
        registry.add_trip("Lisbon")
        registry.apply_remote(MetadataSnapshot())
        assert registry.active_trip_id is None

    def test_relink_by_name(self, registry):
        """Expenses are relinked to categories and cards by name."""
        food = registry.category_named("Food")
        card = PaymentMethod(name="Visa")
        registry.apply_remote(MetadataSnapshot(payment_methods=[card]))
        expense = make_expense(category="food", payment_method_name="VISA")
        ledger = Ledger([expense])

        assert registry.relink_expenses(ledger) == 1

        relinked = ledger.get(expense.id)
        assert relinked.category_id == food.id
        assert relinked.payment_method_id == card.id
        assert registry.relink_expenses(ledger) == 0

    def test_snapshot_round_trip(self, registry):
        """A registry rebuilt from its snapshot matches the original."""
        registry.add_trip("Lisbon")
        copy = MetadataRegistry(registry.snapshot())
        assert copy.snapshot() == registry.snapshot()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
