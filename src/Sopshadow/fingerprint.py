"""Empreinte de contenu pour la détection de changements.

MD5 suffit: l'empreinte sert uniquement à comparer deux contenus, jamais à
authentifier quoi que ce soit.
"""

from __future__ import annotations

import hashlib


def fingerprint(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data, usedforsecurity=False).hexdigest()
