"""Library lookups: labels, priority colours and defect code/type combinations.

Library rows come from an external collaborator (``U_LIB_LIST`` /
``U_LIB_COMBO`` in the inspection database). Rows may be soft-deleted; the
resolver hides them from option lists and colour lookups but still resolves
their labels so historical rules keep displaying.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, Union

from .errors import DependencyError
from .models import (
    COMBO_CODE_TYPE,
    COMBO_PRIORITY_COLOR,
    LIB_DEFECT_CODE,
    LIB_DEFECT_TYPE,
    LIB_PRIORITY,
    UNKNOWN_LABEL,
    ColorCombo,
    LibraryItem,
    Rule,
    RuleLabels,
    StructureType,
)

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]


class LibrarySource(Protocol):
    def get_library_items(self, code: str) -> List[Dict[str, Any]]: ...

    def get_color_combo(self, combo_code: str) -> List[Dict[str, Any]]: ...


class StaticLibrarySource:
    """Library rows held in memory, typically loaded from a JSON seed file.

    Seed layout::

        {"items": {"AMLY_TYP": [{"lib_id": "P1", "lib_desc": "Major", "lib_delete": 0}]},
         "combos": {"AMLYCODFND": [{"code_1": "CORR", "code_2": "PITTING"}]}}
    """

    def __init__(
        self,
        items: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        combos: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ) -> None:
        self._items = {code: [dict(row) for row in rows] for code, rows in (items or {}).items()}
        self._combos = {code: [dict(row) for row in rows] for code, rows in (combos or {}).items()}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticLibrarySource":
        path = Path(path)
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        logger.info("Loaded library seed: %s", path)
        return cls(items=data.get("items", {}), combos=data.get("combos", {}))

    def get_library_items(self, code: str) -> List[Dict[str, Any]]:
        return [{"lib_code": code, **row} for row in self._items.get(code, [])]

    def get_color_combo(self, combo_code: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._combos.get(combo_code, [])]


def parse_rgb(raw: str) -> Optional[RGB]:
    parts = [p.strip() for p in str(raw).split(",")]
    if len(parts) != 3:
        return None
    try:
        values = tuple(int(p) for p in parts)
    except ValueError:
        return None
    if any(v < 0 or v > 255 for v in values):
        return None
    return values  # type: ignore[return-value]


def contrast_text_color(rgb: RGB) -> str:
    """Pick a readable text colour for a badge painted ``rgb``."""
    r, g, b = rgb
    brightness = (r * 299 + g * 587 + b * 114) / 1000
    return "white" if brightness < 125 else "black"


class LibraryResolver:
    """Pure lookups with graceful degradation; caches per instance."""

    def __init__(self, source: LibrarySource) -> None:
        self._source = source
        self._items: Dict[str, Dict[str, LibraryItem]] = {}
        self._combos: Dict[str, List[ColorCombo]] = {}

    def _collection(self, code: str) -> Dict[str, LibraryItem]:
        cached = self._items.get(code)
        if cached is not None:
            return cached
        try:
            rows = self._source.get_library_items(code)
        except Exception as exc:
            logger.error("Library lookup failed for %s: %s", code, exc)
            raise DependencyError(f"library collection {code} unavailable", {"code": code}) from exc
        items: Dict[str, LibraryItem] = {}
        for row in rows:
            item = LibraryItem.from_row({"lib_code": code, **row})
            items[item.id] = item
        self._items[code] = items
        return items

    def _combo(self, combo_code: str) -> List[ColorCombo]:
        cached = self._combos.get(combo_code)
        if cached is not None:
            return cached
        try:
            rows = self._source.get_color_combo(combo_code)
        except Exception as exc:
            logger.error("Library combo lookup failed for %s: %s", combo_code, exc)
            raise DependencyError(
                f"library combo {combo_code} unavailable", {"combo_code": combo_code}
            ) from exc
        combos = [ColorCombo.from_row(row) for row in rows]
        self._combos[combo_code] = combos
        return combos

    def resolve_label(self, collection: str, item_id: Optional[str]) -> str:
        if item_id is None:
            return UNKNOWN_LABEL
        item = self._collection(collection).get(str(item_id))
        if item is None or not item.label:
            return UNKNOWN_LABEL
        return item.label

    def options(self, collection: str) -> List[LibraryItem]:
        return sorted(
            (item for item in self._collection(collection).values() if item.active),
            key=lambda item: item.label,
        )

    def defect_codes(self, structure_type: StructureType = StructureType.platform) -> List[LibraryItem]:
        codes = self.options(LIB_DEFECT_CODE)
        if StructureType(structure_type) == StructureType.platform:
            codes = [c for c in codes if "PIPELINE" not in c.label.upper()]
        return codes

    def defect_type_ids(self, defect_code_id: str) -> Set[str]:
        return {
            combo.code_2
            for combo in self._combo(COMBO_CODE_TYPE)
            if combo.active and combo.code_1 == str(defect_code_id)
        }

    def defect_types(self, defect_code_id: Optional[str] = None) -> List[LibraryItem]:
        types = self.options(LIB_DEFECT_TYPE)
        if defect_code_id is None:
            return types
        allowed = self.defect_type_ids(defect_code_id)
        return [t for t in types if t.id in allowed]

    def resolve_color(self, priority_id: Optional[str]) -> Optional[RGB]:
        if priority_id is None:
            return None
        for combo in self._combo(COMBO_PRIORITY_COLOR):
            if combo.active and combo.code_1 == str(priority_id) and combo.code_2:
                return parse_rgb(combo.code_2)
        return None

    def rule_labels(self, rule: Rule) -> RuleLabels:
        color = self.resolve_color(rule.priority_id)
        return RuleLabels(
            rule_id=rule.id,
            priority_label=self.resolve_label(LIB_PRIORITY, rule.priority_id),
            defect_code_label=self.resolve_label(LIB_DEFECT_CODE, rule.defect_code_id),
            defect_type_label=self.resolve_label(LIB_DEFECT_TYPE, rule.defect_type_id),
            priority_color=color,
            text_color=contrast_text_color(color) if color else None,
        )
