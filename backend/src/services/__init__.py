"""Services package."""

from src.services.follow_up_detector import FollowUpDetector
from src.services.follow_up_drafts import FollowUpDraftGenerator
from src.services.follow_up_service import FollowUpService
from src.services.follow_up_store import FollowUpStore, merge_follow_up
from src.services.team_directory import TeamDirectory

__all__ = [
    "FollowUpDetector",
    "FollowUpDraftGenerator",
    "FollowUpService",
    "FollowUpStore",
    "TeamDirectory",
    "merge_follow_up",
]
