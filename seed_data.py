"""Seed the default workflow stages and approval thresholds."""
from decimal import Decimal

from turnflow.database import SessionLocal
from turnflow.models import ApprovalThreshold, TurnStage

STAGES = [
    {"key": "draft", "name": "Draft", "sequence": 1, "description": "Initial draft stage", "is_default": True},
    {"key": "secure_property", "name": "Secure Property", "sequence": 2, "description": "Property secured"},
    {"key": "inspection", "name": "Inspection", "sequence": 3, "description": "Property inspection"},
    {
        "key": "scope_review",
        "name": "Scope Review",
        "sequence": 4,
        "description": "Review scope of work",
        "requires_amount": True,
    },
    {
        "key": "vendor_assigned",
        "name": "Vendor Assigned",
        "sequence": 5,
        "description": "Vendor assigned to turn",
        "requires_vendor": True,
        "requires_amount": True,
    },
    {
        "key": "in_progress",
        "name": "In Progress",
        "sequence": 6,
        "description": "Turn work in progress",
        "requires_vendor": True,
        "requires_amount": True,
        "requires_approval": True,
        "requires_lock_box": True,
    },
    {
        "key": "change_order",
        "name": "Change Order",
        "sequence": 7,
        "description": "Scope or cost changed during work",
        "requires_vendor": True,
        "requires_amount": True,
        "requires_approval": True,
    },
    {"key": "turns_complete", "name": "Complete", "sequence": 8, "description": "Turn completed", "is_final": True},
    {"key": "scan_360", "name": "360 Scan", "sequence": 9, "description": "Post-completion 360 scan"},
]

THRESHOLDS = [
    {
        "name": "DFO approval",
        "min_amount": Decimal("3000.00"),
        "max_amount": Decimal("10000.00"),
        "approval_type": "dfo",
        "requires_sequential": False,
    },
    {
        "name": "HO approval",
        "min_amount": Decimal("10000.00"),
        "max_amount": None,
        "approval_type": "ho",
        "requires_sequential": True,
    },
]


def seed():
    """Insert missing default stages and thresholds; existing rows are left alone."""
    db = SessionLocal()

    try:
        existing_keys = {key for (key,) in db.query(TurnStage.key).all()}
        created_stages = 0
        for stage_data in STAGES:
            if stage_data["key"] in existing_keys:
                continue
            db.add(TurnStage(**stage_data))
            created_stages += 1

        existing_thresholds = {name for (name,) in db.query(ApprovalThreshold.name).all()}
        created_thresholds = 0
        for threshold_data in THRESHOLDS:
            if threshold_data["name"] in existing_thresholds:
                continue
            db.add(ApprovalThreshold(**threshold_data))
            created_thresholds += 1

        db.commit()
        print(f"✅ Seeded {created_stages} stages and {created_thresholds} approval thresholds")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding database: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
