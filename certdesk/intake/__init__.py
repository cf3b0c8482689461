from .bridge import IntakeBridge, SubmissionReceipt, draft_from_form

__all__ = ["IntakeBridge", "SubmissionReceipt", "draft_from_form"]
