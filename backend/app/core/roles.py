# app/core/roles.py

import enum


class UserRole(str, enum.Enum):
    MARKETER = "marketer"  # owns referral links, earns commissions
    ADMIN = "admin"        # approves, pays and adjusts commissions


class UserStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"
