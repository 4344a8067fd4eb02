"""Active POS profile and its price list, resolved once and reused.

A POSContext is created per terminal process and handed to whatever needs
pricing or permissions. The chosen profile is persisted to session storage
so a restart picks it up again without asking the cashier.
"""
import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional

import documents
import pricing
import session_storage as keys
from pos_errors import ConfigurationError, NotFoundError, PosError

log = logging.getLogger(__name__)


class POSContext:
    def __init__(self, store, storage: keys.SessionStorage,
                 today: Optional[Callable[[], dt.date]] = None):
        self.store = store
        self.storage = storage
        self.today = today or dt.date.today
        self.profile: Optional[Dict[str, Any]] = None
        self.profile_name: Optional[str] = None
        self.item_prices: List[Dict[str, Any]] = []
        self.filtered_prices: List[Dict[str, Any]] = []
        self.is_loaded = False
        self.load_error: Optional[str] = None

    def load_profile_name_from_storage(self) -> Optional[str]:
        return self.storage.get(keys.POS_PROFILE_NAME)

    def save_profile_to_storage(self, profile: Dict[str, Any]):
        self.storage.set_json(keys.POS_PROFILE, profile)
        self.storage.set(keys.POS_PROFILE_NAME, profile['erpnext_id'])

    def clear_profile_storage(self):
        self.storage.remove(keys.POS_PROFILE)
        self.storage.remove(keys.POS_PROFILE_NAME)

    def initialize_pos_data(self, profile_name: Optional[str] = None) -> Dict[str, Any]:
        """Load the named (or persisted) profile and its price list entries.

        Raises ConfigurationError when no profile has been selected and
        NotFoundError when the profile is not in the local store.
        """
        target = profile_name or self.load_profile_name_from_storage()
        try:
            if not target:
                raise ConfigurationError('No POS profile selected. Please login and select a profile.')
            docs = self.store.all_docs()
            profiles = [d for d in docs if d.get('type') == documents.POS_PROFILE]
            profile = next((p for p in profiles if p.get('erpnext_id') == target), None)
            if not profile:
                available = ', '.join(sorted(str(p.get('erpnext_id')) for p in profiles)) or 'none'
                raise NotFoundError(
                    f'POS Profile with erpnext_id "{target}" not found. Available profiles: {available}'
                )
            all_prices = [d for d in docs if d.get('type') == documents.PRICE_LIST_ENTRY]
            filtered = pricing.filter_by_price_list(all_prices, profile.get('price_list_id'))
        except PosError as exc:
            self.load_error = exc.message
            self.is_loaded = False
            self.profile_name = None
            raise

        self.save_profile_to_storage(profile)
        self.profile = profile
        self.profile_name = target
        self.item_prices = all_prices
        self.filtered_prices = filtered
        self.is_loaded = True
        self.load_error = None
        log.info("POS profile %s loaded (price list %s, %d of %d price entries)",
                 target, profile.get('price_list_id'), len(filtered), len(all_prices))
        return profile

    def ensure_loaded(self) -> Dict[str, Any]:
        if not self.is_loaded or not self.profile:
            self.initialize_pos_data()
        return self.profile

    def switch_pos_profile(self, profile_name: str) -> Dict[str, Any]:
        log.info("Switching to POS profile %s", profile_name)
        return self.initialize_pos_data(profile_name)

    def update_item_prices(self, entries: List[Dict[str, Any]]):
        self.item_prices = list(entries)
        if self.profile:
            self.filtered_prices = pricing.filter_by_price_list(entries, self.profile.get('price_list_id'))
        else:
            self.filtered_prices = []

    def get_item_price(self, item_id: str, item_code: Optional[str] = None) -> Dict[str, Any]:
        """Price by item code first, falling back to the item id."""
        as_of = self.today()
        result = pricing.resolve_price(item_code or item_id, self.filtered_prices, as_of)
        if not result['valid'] and item_code and item_id != item_code:
            result = pricing.resolve_price(item_id, self.filtered_prices, as_of)
        return result

    def permissions(self) -> Dict[str, Any]:
        p = self.profile or {}
        return {
            'allow_discount_change': bool(p.get('allow_discount_change') or p.get('enable_customer_discount')),
            'allow_rate_change': bool(p.get('allow_rate_change')),
            'enable_pos_offers': bool(p.get('enable_pos_offers')),
            'allow_negative_stock': bool(p.get('allow_negative_stock')),
            'payment_methods': p.get('payment_methods') or [],
        }

    def reset(self):
        """Forget the active profile (logout)."""
        self.clear_profile_storage()
        self.profile = None
        self.profile_name = None
        self.item_prices = []
        self.filtered_prices = []
        self.is_loaded = False
        self.load_error = None
