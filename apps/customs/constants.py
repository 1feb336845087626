from __future__ import annotations


class ItemTypeCode:
    ROH = "ROH"  # raw material
    HALB = "HALB"  # work in process
    FERT = "FERT"  # finished good
    HIBE = "HIBE"  # capital goods
    HIBE_M = "HIBE-M"
    HIBE_E = "HIBE-E"
    HIBE_T = "HIBE-T"
    SCRAP = "SCRAP"


class AdjustmentType:
    GAIN = "GAIN"
    LOSS = "LOSS"


class RecalcPriority:
    # Lowest runs first: same-day work is consumed before backdated work (LOCKED)
    SAME_DAY = -1
    BACKDATED = 0


# Queue reason prefixes (audit trail on RecalcQueueItem.reason)
REASON_MOVEMENT = "Ledger movement"
REASON_IMPORT = "Ledger import"
REASON_OPENING_BALANCE = "Opening balance import"

# PostedMovement.document_number for lines posted without a customs document
LEDGER_DOCUMENT = "LEDGER"
