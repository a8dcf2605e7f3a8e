import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join("config", "merchant-category-mapping.json")


class CategoryStoreError(Exception):
    """The mapping file exists but cannot be read as a JSON object"""


class CategoryStore:
    """
    Merchant -> ledger category mapping kept in a human-editable JSON file.

    The file is re-read whenever its modification time moves forward, so a
    category typed in by hand is picked up without a restart. An empty string
    value means "known merchant, category still to be filled in".
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(
            config_path or os.getenv("MERCHANT_CATEGORY_CONFIG_PATH") or DEFAULT_CONFIG_PATH
        )
        self._mappings: Dict[str, str] = {}
        self._mtime_ns: Optional[int] = None
        self.refresh_if_needed()

    def _current_mtime(self) -> Optional[int]:
        try:
            return self.config_path.stat().st_mtime_ns
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"⚠️ Error checking modification time of {self.config_path}: {e}")
            return None

    def _read(self) -> Dict[str, str]:
        """
        Read the mapping file; a missing file is an empty mapping

        Raises:
            CategoryStoreError: the file is unreadable or not a JSON object
        """
        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise CategoryStoreError(f"Error loading merchant category mapping from {self.config_path}: {e}") from e

        if not isinstance(data, dict):
            raise CategoryStoreError(f"Merchant category mapping in {self.config_path} is not a JSON object")

        return {str(k): "" if v is None else str(v) for k, v in data.items()}

    def refresh_if_needed(self) -> bool:
        """
        Reload the mapping if the file changed since the last load

        A file that cannot be parsed (e.g. mid-edit) keeps the last good
        mapping in memory until it is fixed.

        Returns:
            bool: True if the mapping was reloaded
        """
        mtime = self._current_mtime()
        if mtime is None or (self._mtime_ns is not None and mtime <= self._mtime_ns):
            return False

        self._mtime_ns = mtime
        try:
            self._mappings = self._read()
        except CategoryStoreError as e:
            logger.error(f"❌ {e}, keeping {len(self._mappings)} previously loaded mappings")
            return False
        logger.info(f"🔄 Loaded {len(self._mappings)} merchant category mappings from {self.config_path}")
        return True

    def find_category(self, merchant: str) -> Optional[str]:
        """
        Find the category for a merchant

        Exact (case-sensitive) key match first, then the first entry where the
        merchant contains the key or the key contains the merchant, ignoring
        case. Entries still waiting for a category never match.
        """
        if not merchant:
            return None

        self.refresh_if_needed()

        category = self._mappings.get(merchant)
        if category:
            return category

        needle = merchant.lower()
        for key, value in self._mappings.items():
            if not value:
                continue
            key_lower = key.lower()
            if key_lower in needle or needle in key_lower:
                logger.debug(f"✓ Matched '{merchant}' via '{key}' -> {value}")
                return value

        return None

    def add_unresolved_merchant(self, merchant: str, category: Optional[str] = None) -> None:
        """
        Upsert a merchant, with its category or an empty placeholder

        Re-reads the file right before writing so manual edits made since the
        last load are kept. An unreadable file is left untouched.

        Raises:
            CategoryStoreError: the file could not be read, nothing was written
        """
        try:
            mappings = self._read()
        except CategoryStoreError as e:
            logger.error(f"❌ Not saving merchant \"{merchant}\": {e}")
            raise
        mappings[merchant] = category or ""

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with self.config_path.open("w", encoding="utf-8") as f:
            json.dump(mappings, f, indent=2, ensure_ascii=False)
            f.write("\n")

        self._mappings = mappings
        self._mtime_ns = self._current_mtime()

        if category:
            logger.info(f"✅ Saved merchant \"{merchant}\" with category \"{category}\"")
        else:
            logger.info(f"📝 Added merchant \"{merchant}\" with empty category for manual completion")

    def known_categories(self) -> List[str]:
        """Distinct categories in use, in first-seen order"""
        self.refresh_if_needed()
        return list(dict.fromkeys(v for v in self._mappings.values() if v))

    def all_mappings(self) -> Dict[str, str]:
        self.refresh_if_needed()
        return dict(self._mappings)
