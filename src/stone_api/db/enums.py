from __future__ import annotations

from enum import Enum


class AuthProvider(str, Enum):
    APPLE = "apple"
    GOOGLE = "google"
    PASSWORD = "password"
