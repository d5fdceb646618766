from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from bookstore.config import DATA_DIR
from bookstore.errors import invalid_from_validation
from bookstore.loggers import get_logger
from bookstore.models.context import OwnerContext
from bookstore.models.settings import OpeningBalances

log = get_logger("bookstore.settings")


# ---------- Utils JSON ----------
def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        log.error("%s: unreadable settings file", path)
        return None
    return data if isinstance(data, dict) else None


def _dump_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


class SettingsService:
    """Per-owner ``settings.json``: opening balances set at onboarding, editable afterwards."""

    def __init__(self, data_dir: Optional[Union[str, Path]] = None) -> None:
        self.data_dir = Path(data_dir) if data_dir else DATA_DIR

    def _path(self, ctx: OwnerContext) -> Path:
        return self.data_dir / ctx.owner_id / "settings.json"

    def is_onboarded(self, ctx: OwnerContext) -> bool:
        return "opening_balances" in (_load_json(self._path(ctx)) or {})

    def get_opening_balances(self, ctx: OwnerContext) -> OpeningBalances:
        raw = (_load_json(self._path(ctx)) or {}).get("opening_balances")
        if raw is None:
            return OpeningBalances()
        try:
            return OpeningBalances.model_validate(raw)
        except ValidationError as e:
            raise invalid_from_validation("opening balances", e, record=raw) from e

    def set_opening_balances(self, ctx: OwnerContext, balances: OpeningBalances) -> OpeningBalances:
        path = self._path(ctx)
        settings = _load_json(path) or {}
        settings["opening_balances"] = balances.model_dump(mode="json")
        _dump_json(path, settings)
        log.info("opening balances for %s set to cash=%s bank=%s stock=%s (from %s)",
                 ctx.owner_id, balances.cash, balances.bank, balances.stock_value, balances.reference_date)
        return balances
