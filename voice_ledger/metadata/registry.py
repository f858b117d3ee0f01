"""
Metadata Registry

The user's categories, trips and payment methods plus the account's
default currency. Edits that affect saved expenses (renaming or removing
a category or payment method) are applied to the ledger in the same
step so no row is left pointing at something that no longer exists.

CRITICAL BOUNDARIES:
- Category names are unique case-insensitively
- "Other" always exists and cannot be removed; removing any other
  category re-points its expenses to "Other"
- At most one trip is active
"""

from datetime import date, datetime
from typing import Callable, Iterable, Optional
from uuid import UUID

import structlog

from voice_ledger.ledger import Ledger
from voice_ledger.models.expense import (
    OTHER_CATEGORY,
    CategoryDefinition,
    MetadataSnapshot,
    ParseStatus,
    PaymentMethod,
    PaymentMethodType,
    TripRecord,
    TripStatus,
    normalize_currency_code,
    utc_now,
)


logger = structlog.get_logger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_CATEGORY_SEEDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("Food", "#F97316", ("restaurant", "cafe", "coffee", "meal", "lunch", "dinner", "breakfast")),
    ("Groceries", "#22C55E", ("grocery", "groceries", "supermarket", "market", "costco", "walmart")),
    ("Transport", "#0EA5E9", ("uber", "lyft", "taxi", "bus", "train", "metro", "gas", "fuel", "toll", "parking")),
    ("Shopping", "#EC4899", ("shopping", "amazon", "clothes", "shoes", "mall", "store")),
    ("Utilities", "#EF4444", ("bill", "electricity", "internet", "phone", "water", "utility", "insurance")),
    ("Entertainment", "#8B5CF6", ("movie", "concert", "games", "nightclub", "club", "bar", "table", "bottle", "cover")),
    ("Subscriptions", "#6366F1", ("subscription", "monthly", "netflix", "spotify", "icloud", "membership")),
    (OTHER_CATEGORY, "#64748B", ()),
)


def default_categories() -> list[CategoryDefinition]:
    return [
        CategoryDefinition(
            name=name,
            color_hex=color,
            is_default=True,
            hint_keywords=sorted(hints),
        )
        for name, color, hints in DEFAULT_CATEGORY_SEEDS
    ]


def normalize_keywords(hints: Iterable[str]) -> list[str]:
    """Split on commas, trim, lowercase, deduplicate and sort."""
    keywords = set()
    for hint in hints:
        for part in hint.split(","):
            part = part.strip().lower()
            if part:
                keywords.add(part)
    return sorted(keywords)


def _category_sort_key(category: CategoryDefinition) -> tuple[int, str]:
    return (0 if category.is_default else 1, category.name.lower())


def merge_remote_categories(
    local: list[CategoryDefinition],
    remote: list[CategoryDefinition],
) -> list[CategoryDefinition]:
    """
    Remote categories plus local defaults the remote list lacks.

    An empty remote list keeps the local one. Defaults sort first, then
    by name.
    """
    if not remote:
        return list(local)
    remote_names = {category.name.lower() for category in remote}
    merged = list(remote)
    merged.extend(
        category for category in local
        if category.is_default and category.name.lower() not in remote_names
    )
    return sorted(merged, key=_category_sort_key)


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# =============================================================================
# REGISTRY
# =============================================================================

class MetadataRegistry:
    """
    In-memory metadata owned by ExpenseTracker.

    Every mutator returns whether anything changed; the caller persists
    and schedules a metadata sync when it did.
    """

    def __init__(
        self,
        snapshot: Optional[MetadataSnapshot] = None,
        default_currency: str = "USD",
        clock: Callable[[], datetime] = utc_now,
    ):
        snapshot = snapshot or MetadataSnapshot()
        self._clock = clock
        self.categories: list[CategoryDefinition] = list(snapshot.categories)
        self.trips: list[TripRecord] = list(snapshot.trips)
        self.payment_methods: list[PaymentMethod] = list(snapshot.payment_methods)
        self.active_trip_id: Optional[UUID] = snapshot.active_trip_id
        self.default_currency_code: str = (
            normalize_currency_code(snapshot.default_currency_code)
            or normalize_currency_code(default_currency)
            or "USD"
        )

    def snapshot(self) -> MetadataSnapshot:
        return MetadataSnapshot(
            categories=list(self.categories),
            trips=list(self.trips),
            payment_methods=list(self.payment_methods),
            active_trip_id=self.active_trip_id,
            default_currency_code=self.default_currency_code,
        )

    def seed_defaults_if_needed(self) -> bool:
        if self.categories:
            return False
        self.categories = default_categories()
        return True

    # ===== LOOKUPS =====

    @property
    def category_names(self) -> list[str]:
        return [category.name for category in self.categories]

    @property
    def active_trip(self) -> Optional[TripRecord]:
        if self.active_trip_id is None:
            return None
        return self._trip(self.active_trip_id)

    @property
    def active_payment_methods(self) -> list[PaymentMethod]:
        return [method for method in self.payment_methods if method.is_active]

    def category_named(self, name: str) -> Optional[CategoryDefinition]:
        wanted = name.strip().lower()
        for category in self.categories:
            if category.name.lower() == wanted:
                return category
        return None

    def _category(self, category_id: UUID) -> Optional[CategoryDefinition]:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    def _trip(self, trip_id: UUID) -> Optional[TripRecord]:
        for trip in self.trips:
            if trip.id == trip_id:
                return trip
        return None

    # ===== CATEGORIES =====

    def add_category(
        self,
        name: str,
        color_hex: Optional[str] = None,
        hints: Iterable[str] = (),
    ) -> Optional[CategoryDefinition]:
        trimmed = name.strip()
        if not trimmed or self.category_named(trimmed) is not None:
            return None
        category = CategoryDefinition(
            name=trimmed,
            color_hex=color_hex,
            is_default=False,
            hint_keywords=normalize_keywords(hints),
        )
        self.categories = sorted([*self.categories, category], key=_category_sort_key)
        return category

    def update_category(
        self,
        category_id: UUID,
        name: str,
        hints: Iterable[str],
        ledger: Ledger,
    ) -> bool:
        """Rename a category and re-label the expenses that use it."""
        category = self._category(category_id)
        trimmed = name.strip()
        if category is None or not trimmed:
            return False
        clash = self.category_named(trimmed)
        if clash is not None and clash.id != category_id:
            return False

        updated = category.model_copy(update={
            "name": trimmed,
            "hint_keywords": normalize_keywords(hints),
        })
        self.categories = [updated if c.id == category_id else c for c in self.categories]

        now = self._clock()
        ledger.update_where(
            lambda expense: expense.category_id == category_id,
            lambda expense: {"category": trimmed, "updated_at": now},
        )
        return True

    def remove_category(self, category_id: UUID, ledger: Ledger) -> bool:
        """Remove a category; its expenses move to "Other" as edited rows."""
        category = self._category(category_id)
        if category is None or category.name.lower() == OTHER_CATEGORY.lower():
            return False
        self.categories = [c for c in self.categories if c.id != category_id]

        other = self.category_named(OTHER_CATEGORY)
        now = self._clock()
        ledger.update_where(
            lambda expense: expense.category_id == category_id,
            lambda expense: {
                "category": OTHER_CATEGORY,
                "category_id": other.id if other else None,
                "parse_status": ParseStatus.EDITED,
                "updated_at": now,
            },
        )
        return True

    # ===== PAYMENT METHODS =====

    def add_payment_method(
        self,
        name: str,
        method_type: PaymentMethodType = PaymentMethodType.OTHER,
        network: Optional[str] = None,
        last4: Optional[str] = None,
        aliases: Iterable[str] = (),
    ) -> Optional[PaymentMethod]:
        trimmed = name.strip()
        if not trimmed:
            return None
        method = PaymentMethod(
            name=trimmed,
            type=method_type,
            network=_blank_to_none(network),
            last4=_blank_to_none(last4),
            aliases=normalize_keywords(aliases),
        )
        self.payment_methods.insert(0, method)
        return method

    def update_payment_method(self, updated: PaymentMethod, ledger: Ledger) -> bool:
        if not any(method.id == updated.id for method in self.payment_methods):
            return False
        self.payment_methods = [
            updated if method.id == updated.id else method
            for method in self.payment_methods
        ]
        now = self._clock()
        ledger.update_where(
            lambda expense: expense.payment_method_id == updated.id,
            lambda expense: {"payment_method_name": updated.name, "updated_at": now},
        )
        return True

    def remove_payment_method(self, method_id: UUID, ledger: Ledger) -> bool:
        before = len(self.payment_methods)
        self.payment_methods = [m for m in self.payment_methods if m.id != method_id]
        if len(self.payment_methods) == before:
            return False
        now = self._clock()
        ledger.update_where(
            lambda expense: expense.payment_method_id == method_id,
            lambda expense: {
                "payment_method_id": None,
                "payment_method_name": None,
                "updated_at": now,
            },
        )
        return True

    # ===== TRIPS =====

    def add_trip(
        self,
        name: str,
        destination: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        base_currency: Optional[str] = None,
        set_active: bool = True,
    ) -> Optional[TripRecord]:
        trimmed = name.strip()
        if not trimmed:
            return None
        trip = TripRecord(
            name=trimmed,
            destination=_blank_to_none(destination),
            start_date=start_date or self._clock().date(),
            end_date=end_date,
            base_currency=_blank_to_none(base_currency),
            status=TripStatus.ACTIVE if set_active else TripStatus.PLANNED,
        )
        if set_active:
            self._complete_active_trips(except_id=trip.id)
            self.active_trip_id = trip.id
        self.trips.insert(0, trip)
        return trip

    def select_trip(self, trip_id: Optional[UUID]) -> bool:
        """Make a trip the active one (None clears the selection)."""
        self.active_trip_id = trip_id
        if trip_id is not None and self._trip(trip_id) is not None:
            self._complete_active_trips(except_id=trip_id)
            self.trips = [
                t.model_copy(update={"status": TripStatus.ACTIVE}) if t.id == trip_id else t
                for t in self.trips
            ]
        return True

    def end_active_trip(self) -> bool:
        if self.active_trip_id is None:
            return False
        today = self._clock().date()
        self.trips = [
            t.model_copy(update={
                "status": TripStatus.COMPLETED,
                "end_date": t.end_date or today,
            }) if t.id == self.active_trip_id else t
            for t in self.trips
        ]
        self.active_trip_id = None
        return True

    def _complete_active_trips(self, except_id: UUID) -> None:
        self.trips = [
            t.model_copy(update={"status": TripStatus.COMPLETED})
            if t.status == TripStatus.ACTIVE and t.id != except_id else t
            for t in self.trips
        ]

    # ===== CURRENCY =====

    def set_default_currency(self, code: str) -> bool:
        normalized = normalize_currency_code(code)
        if normalized is None or normalized == self.default_currency_code:
            return False
        self.default_currency_code = normalized
        return True

    # ===== REMOTE =====

    def apply_remote(self, snapshot: MetadataSnapshot) -> None:
        """Take the server's snapshot, keeping local defaults it lacks."""
        self.categories = merge_remote_categories(self.categories, snapshot.categories)
        self.trips = list(snapshot.trips)
        self.payment_methods = list(snapshot.payment_methods)

        remote_default = normalize_currency_code(snapshot.default_currency_code)
        if remote_default:
            self.default_currency_code = remote_default

        trip_ids = {trip.id for trip in self.trips}
        if snapshot.active_trip_id in trip_ids:
            self.active_trip_id = snapshot.active_trip_id
        elif self.active_trip_id not in trip_ids:
            self.active_trip_id = None

    def relink_expenses(self, ledger: Ledger) -> int:
        """
        Point expense references at the current metadata ids, matching by
        case-insensitive name.

        Returns:
            Number of expenses changed
        """
        categories = {c.name.lower(): c.id for c in self.categories}
        trips = {t.name.lower(): t.id for t in self.trips}
        methods = {m.name.lower(): m.id for m in self.payment_methods}

        def relinked(expense) -> dict:
            fields = {}
            category_id = categories.get(expense.category.lower())
            if category_id is not None and expense.category_id != category_id:
                fields["category_id"] = category_id
            if expense.trip_name:
                trip_id = trips.get(expense.trip_name.lower())
                if trip_id is not None and expense.trip_id != trip_id:
                    fields["trip_id"] = trip_id
            if expense.payment_method_name:
                method_id = methods.get(expense.payment_method_name.lower())
                if method_id is not None and expense.payment_method_id != method_id:
                    fields["payment_method_id"] = method_id
            return fields

        changed = ledger.update_where(lambda expense: True, relinked)
        if changed:
            logger.info("expenses_relinked", count=changed)
        return changed
