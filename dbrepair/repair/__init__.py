"""
Checked, verified repairs (Checking -> Applying -> Verifying -> Done).
"""
from dbrepair.repair.operation import (
    RepairOperation,
    RepairReport,
    RepairState,
    ReplaceTextRepair,
    SetFieldRepair,
    migrate_enum_value,
    set_active,
)
from dbrepair.repair.schema import EnsureColumnRepair

__all__ = [
    # State machine
    "RepairOperation",
    "RepairReport",
    "RepairState",
    # Row repairs
    "SetFieldRepair",
    "ReplaceTextRepair",
    "set_active",
    "migrate_enum_value",
    # Schema repairs
    "EnsureColumnRepair",
]
