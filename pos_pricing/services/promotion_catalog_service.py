"""
Promotion catalog adapter.

Raw promotion and discount records arrive with string values ("50%",
"₱10"), mixed key casing and comma separated product lists. This module
normalizes them into PromotionDefinition / DiscountDefinition; the
allocators never see raw shapes.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from pos_pricing.exceptions import ValidationError
from pos_pricing.models import DiscountRecord, PromotionRecord
from pos_pricing.models.pricing import (
    ApplicationScope, DiscountDefinition, PromotionDefinition, PromotionKind
)
from pos_pricing.utils.money import HUNDRED, ZERO, parse_amount, to_decimal

logger = logging.getLogger(__name__)


_BUNDLE_TYPES = {'bogo', 'bundle', 'buy_x_get_y'}


def _first(raw: dict, *keys):
    for key in keys:
        value = raw.get(key)
        if value is not None and value != '':
            return value
    return None


def _name_list(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        parts = value.split(',')
    else:
        parts = list(value)
    return tuple(str(part).strip() for part in parts if str(part).strip())


def _parse_datetime(value, record_id) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f'Invalid date {value!r}', record_id)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _positive_int(value, label, record_id, default=None) -> Optional[int]:
    if value is None or value == '':
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} must be an integer, got {value!r}', record_id)
    if number <= 0:
        raise ValidationError(f'{label} must be greater than 0', record_id)
    return number


def _amount(value, label, record_id):
    try:
        return parse_amount(value)
    except ValueError as e:
        raise ValidationError(f'{label}: {e}', record_id)


def _kind_of(type_str) -> Optional[PromotionKind]:
    type_str = str(type_str or '').strip().lower()
    if type_str in _BUNDLE_TYPES:
        return PromotionKind.BUNDLE
    if 'percentage' in type_str or '%' in type_str:
        return PromotionKind.PERCENTAGE
    if 'fixed' in type_str or '₱' in type_str:
        return PromotionKind.FIXED
    return None


def _scope_of(raw_scope, record_id, default: ApplicationScope) -> ApplicationScope:
    if raw_scope is None or raw_scope == '':
        return default
    try:
        return ApplicationScope(str(raw_scope).strip().lower())
    except ValueError:
        raise ValidationError(f'Unknown application type {raw_scope!r}', record_id)


def _check_value(kind: PromotionKind, value, record_id):
    if value <= ZERO:
        raise ValidationError('Discount value must be greater than 0', record_id)
    if kind == PromotionKind.PERCENTAGE and value > HUNDRED:
        raise ValidationError('Percentage cannot exceed 100', record_id)


def normalize_promotion(raw: dict) -> PromotionDefinition:
    """
    Normalize one raw promotion record.

    Raises:
        ValidationError: if the record cannot be used by the allocator.
    """
    record_id = _first(raw, 'id', 'promotion_id', 'promotionId')
    if record_id is None:
        raise ValidationError('Promotion has no id')
    record_id = str(record_id)

    name = _first(raw, 'name', 'promotion_name', 'promotionName')
    if not name:
        raise ValidationError('Promotion has no name', record_id)

    raw_value = _first(raw, 'value', 'promotion_value', 'promotionValue')
    kind = _kind_of(_first(raw, 'type', 'promotion_type', 'promotionType'))
    if kind is None:
        raise ValidationError('Unknown promotion type', record_id)

    raw_products = _first(raw, 'products', 'selected_products', 'selectedProducts', 'applicable_products')
    targets = _name_list(raw_products)
    valid_from = _parse_datetime(_first(raw, 'valid_from', 'validFrom'), record_id)
    valid_to = _parse_datetime(_first(raw, 'valid_to', 'validTo'), record_id)
    min_quantity = _positive_int(_first(raw, 'min_quantity', 'minQuantity'), 'Minimum quantity', record_id)

    if kind == PromotionKind.BUNDLE:
        if len(targets) not in (1, 2):
            raise ValidationError('Bundle promotion must target one or two products', record_id)
        buy_quantity = _positive_int(_first(raw, 'buy_quantity', 'buyQuantity'), 'Buy quantity', record_id, 1)
        get_quantity = _positive_int(_first(raw, 'get_quantity', 'getQuantity'), 'Get quantity', record_id, 1)

        discount_type = _first(raw, 'bogo_discount_type', 'bogoDiscountType', 'bundle_discount_type')
        discount_value = _first(raw, 'bogo_discount_value', 'bogoDiscountValue', 'bundle_discount_value')
        if discount_type is None:
            if raw_value is None:
                raise ValidationError('Bundle promotion has no discount value', record_id)
            discount_type = 'percentage' if '%' in str(raw_value) else 'fixed'
        discount_kind = _kind_of(discount_type)
        if discount_kind not in (PromotionKind.PERCENTAGE, PromotionKind.FIXED):
            raise ValidationError(f'Unknown bundle discount type {discount_type!r}', record_id)
        value = _amount(discount_value if discount_value is not None else raw_value, 'Bundle discount', record_id)
        _check_value(discount_kind, value, record_id)

        return PromotionDefinition(
            id=record_id,
            name=str(name),
            kind=kind,
            target_names=targets,
            buy_quantity=buy_quantity,
            get_quantity=get_quantity,
            bundle_discount_type=discount_kind.value,
            bundle_discount_value=value,
            min_quantity=min_quantity,
            valid_from=valid_from,
            valid_to=valid_to,
        )

    if raw_value is None:
        raise ValidationError('Promotion has no value', record_id)
    value = _amount(raw_value, 'Promotion value', record_id)
    _check_value(kind, value, record_id)

    raw_scope = _first(raw, 'application_type', 'applicationType', 'application_scope')
    if raw_scope is None and isinstance(raw_products, str) and raw_products.strip().lower() == 'all products':
        raw_scope = ApplicationScope.ALL_PRODUCTS.value
    scope = _scope_of(raw_scope, record_id, ApplicationScope.SPECIFIC_PRODUCTS)
    if scope == ApplicationScope.ALL_PRODUCTS:
        targets = ()
    elif not targets:
        raise ValidationError('Promotion scope lists no products or categories', record_id)

    return PromotionDefinition(
        id=record_id,
        name=str(name),
        kind=kind,
        value=value,
        application_scope=scope,
        target_names=targets,
        min_quantity=min_quantity,
        valid_from=valid_from,
        valid_to=valid_to,
    )


def normalize_discount(raw: dict) -> DiscountDefinition:
    """
    Normalize one raw manual discount record.

    Raises:
        ValidationError: if the record cannot be applied.
    """
    record_id = _first(raw, 'id', 'discount_id', 'discountId')
    if record_id is None:
        raise ValidationError('Discount has no id')
    record_id = str(record_id)

    name = _first(raw, 'name', 'discount_name', 'discountName')
    if not name:
        raise ValidationError('Discount has no name', record_id)

    kind = _kind_of(_first(raw, 'type', 'discount_type', 'discountType'))
    if kind not in (PromotionKind.PERCENTAGE, PromotionKind.FIXED):
        raise ValidationError('Unknown discount type', record_id)

    raw_value = _first(raw, 'discount', 'value')
    if raw_value is None:
        raise ValidationError('Discount has no value', record_id)
    value = _amount(raw_value, 'Discount value', record_id)
    _check_value(kind, value, record_id)

    raw_min_spend = _first(raw, 'min_spend', 'minSpend', 'minAmount')
    min_spend = ZERO
    if raw_min_spend is not None:
        try:
            min_spend = to_decimal(raw_min_spend, 'Minimum spend')
        except ValueError as e:
            raise ValidationError(str(e), record_id)

    scope = _scope_of(
        _first(raw, 'application_type', 'applicationType', 'application_scope'),
        record_id, ApplicationScope.ALL_PRODUCTS
    )
    products = _name_list(_first(raw, 'applicable_products', 'applicableProducts'))
    categories = _name_list(_first(raw, 'applicable_categories', 'applicableCategories'))
    if scope == ApplicationScope.SPECIFIC_PRODUCTS and not products:
        raise ValidationError('Discount scope lists no products', record_id)
    if scope == ApplicationScope.SPECIFIC_CATEGORIES and not categories:
        raise ValidationError('Discount scope lists no categories', record_id)

    return DiscountDefinition(
        id=record_id,
        name=str(name),
        kind=kind,
        value=value,
        min_spend=min_spend,
        application_scope=scope,
        target_products=products,
        target_categories=categories,
    )


def _is_active_status(raw: dict) -> bool:
    status = raw.get('status')
    return status is None or str(status).strip().lower() == 'active'


def load_promotions(raw_records: Iterable[dict], now: Optional[datetime] = None) -> List[PromotionDefinition]:
    """
    Normalize a promotion feed, skipping inactive, expired and malformed records.

    Order is preserved: it decides ties between equal candidates.
    """
    now = now or datetime.now(timezone.utc)
    promotions = []
    for raw in raw_records:
        if not _is_active_status(raw):
            continue
        try:
            promotion = normalize_promotion(raw)
        except ValidationError as e:
            logger.warning(f"[CATALOG] Skipping promotion {e.record_id}: {e.message}")
            continue
        if not promotion.is_active_at(now):
            logger.debug(f"[CATALOG] Promotion {promotion.id} outside its validity window")
            continue
        promotions.append(promotion)
    return promotions


def load_discounts(raw_records: Iterable[dict]) -> List[DiscountDefinition]:
    """Normalize a discount feed, skipping inactive and malformed records."""
    discounts = []
    for raw in raw_records:
        if not _is_active_status(raw):
            continue
        try:
            discounts.append(normalize_discount(raw))
        except ValidationError as e:
            logger.warning(f"[CATALOG] Skipping discount {e.record_id}: {e.message}")
    return discounts


def _raw_catalog(session: Session, store_id: int) -> dict:
    promotions = session.query(PromotionRecord).filter(
        PromotionRecord.store_id == store_id
    ).order_by(PromotionRecord.id).all()
    discounts = session.query(DiscountRecord).filter(
        DiscountRecord.store_id == store_id
    ).order_by(DiscountRecord.id).all()
    return {
        'promotions': [record.to_raw() for record in promotions],
        'discounts': [record.to_raw() for record in discounts],
    }


def get_store_catalog(session: Session, store_id: int, now: Optional[datetime] = None):
    """
    Promotions and discounts of one store, normalized.

    Raw records are cached per store (cache-aside); normalization runs on
    every call so validity windows are evaluated against the current time.

    Returns:
        Tuple (promotions, discounts)
    """
    from pos_pricing.services.cache_service import get_cache

    raw = get_cache().catalog_records(store_id, lambda: _raw_catalog(session, store_id))
    return load_promotions(raw['promotions'], now), load_discounts(raw['discounts'])


def find_promotion(promotions: Iterable[PromotionDefinition], promotion_id) -> Optional[PromotionDefinition]:
    for promotion in promotions:
        if promotion.id == str(promotion_id):
            return promotion
    return None


def find_discount(discounts: Iterable[DiscountDefinition], discount_id) -> Optional[DiscountDefinition]:
    for discount in discounts:
        if discount.id == str(discount_id):
            return discount
    return None


def is_discount_record(raw: dict) -> bool:
    """Discount records carry their amount under 'discount'; promotions under 'value'."""
    kind = str(raw.get('record_type') or '').lower()
    if kind:
        return kind == 'discount'
    return 'discount' in raw


def import_records(session: Session, store_id: int, raw_records: Iterable[dict]) -> dict:
    """
    Store raw promotion/discount records for a store.

    Every record is validated first; malformed ones are reported and not
    stored. The store's cached catalog is invalidated on success.

    Returns:
        dict with imported/skipped counters
    """
    imported = {'promotions': 0, 'discounts': 0, 'skipped': 0}
    try:
        for raw in raw_records:
            try:
                if is_discount_record(raw):
                    definition = normalize_discount({**raw, 'id': raw.get('id', 'new')})
                    session.add(DiscountRecord(
                        store_id=store_id,
                        name=definition.name,
                        type=definition.kind.value,
                        discount=str(definition.value),
                        min_spend=definition.min_spend,
                        application_type=definition.application_scope.value,
                        applicable_products=list(definition.target_products),
                        applicable_categories=list(definition.target_categories),
                        status=str(raw.get('status') or 'active').lower(),
                    ))
                    imported['discounts'] += 1
                else:
                    definition = normalize_promotion({**raw, 'id': raw.get('id', 'new')})
                    session.add(PromotionRecord(
                        store_id=store_id,
                        name=definition.name,
                        promotion_type='bogo' if definition.is_bundle else definition.kind.value,
                        value=None if definition.is_bundle else str(definition.value),
                        products=', '.join(definition.target_names) or 'All Products',
                        application_type=None if definition.is_bundle else definition.application_scope.value,
                        buy_quantity=definition.buy_quantity if definition.is_bundle else None,
                        get_quantity=definition.get_quantity if definition.is_bundle else None,
                        bogo_discount_type=definition.bundle_discount_type,
                        bogo_discount_value=definition.bundle_discount_value if definition.is_bundle else None,
                        min_quantity=definition.min_quantity,
                        status=str(raw.get('status') or 'active').lower(),
                        valid_from=definition.valid_from,
                        valid_to=definition.valid_to,
                    ))
                    imported['promotions'] += 1
            except ValidationError as e:
                logger.warning(f"[CATALOG] Not importing {raw.get('name')!r}: {e.message}")
                imported['skipped'] += 1
        session.commit()
    except Exception:
        session.rollback()
        raise

    from pos_pricing.services.cache_service import get_cache
    get_cache().invalidate_catalog(store_id)
    logger.info(
        f"[CATALOG] Store {store_id}: imported {imported['promotions']} promotions, "
        f"{imported['discounts']} discounts, skipped {imported['skipped']}"
    )
    return imported
