"""
Modul filter: Menentukan action mana yang termasuk funnel pemesanan tiket.

Filter ini murni (tanpa state dan tanpa side effect) dan dipakai oleh dua
sisi pipeline secara independen: poller sebelum publish, dan consumer saat
menerima pesan.
"""

import re
from typing import Any

from .config import settings


def build_pattern(prefix: str) -> re.Pattern[str]:
    """Compile prefix URL menjadi regex yang di-anchor di awal string."""
    return re.compile("^" + re.escape(prefix))


DEFAULT_PATTERN: re.Pattern[str] = build_pattern(settings.target_url_prefix)


def is_qualifying(action: Any, pattern: re.Pattern[str] = DEFAULT_PATTERN) -> bool:
    """Action lolos jika punya field url bertipe string yang cocok dengan pattern."""
    if not isinstance(action, dict):
        return False
    url = action.get("url")
    return isinstance(url, str) and pattern.match(url) is not None


def filter_relevant(
    actions: Any,
    pattern: re.Pattern[str] | None = None,
) -> list[Any]:
    """
    Ambil subset action yang URL-nya cocok dengan target pattern.

    Urutan dipertahankan dan input tidak dimodifikasi. Selalu mengembalikan
    list (kosong jika tidak ada yang cocok), tidak pernah None.

    Args:
        actions: Daftar action detail dari satu visit. Selain list/tuple
            (None, angka, dict, string) dianggap tidak punya action.
        pattern: Regex target; default dari settings.target_url_prefix

    Returns:
        List action yang lolos filter
    """
    if not isinstance(actions, (list, tuple)):
        return []
    active: re.Pattern[str] = pattern or DEFAULT_PATTERN
    return [action for action in actions if is_qualifying(action, active)]
