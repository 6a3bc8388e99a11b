from __future__ import annotations

from triage.schemas.moderation import Disposition, ModerationResult

AUTO_APPROVE_MIN_CONFIDENCE = 0.90
QUICK_REVIEW_MIN_CONFIDENCE = 0.70


def classify(result: ModerationResult) -> Disposition:
    """Route a moderation result to a disposition.

    A red flag or a reject recommendation always forces deep review, whatever the
    confidence. Only flag-free auto-approve recommendations at or above 0.90 publish
    automatically. ``rejected`` is never produced here; it is a curator decision.
    """
    if result.flags or result.recommendation == "reject":
        return Disposition.REVIEW_DEEP
    if result.recommendation == "auto-approve" and result.confidence >= AUTO_APPROVE_MIN_CONFIDENCE:
        return Disposition.AUTO_APPROVED
    if result.confidence >= QUICK_REVIEW_MIN_CONFIDENCE:
        return Disposition.REVIEW_QUICK
    return Disposition.REVIEW_DEEP
