"""Reviewer eligibility and least-loaded reviewer selection.

Eligible reviewers are the members the permission oracle reports as holding
``review_annotations``. Workload is the number of a reviewer's *pending*
reviews in the same project; reviews in other projects do not count.

Workload for every reviewer comes back from a single grouped query, so there
is no per-reviewer lookup.

Selection picks the lowest workload. Ties are broken by the lowest user id,
so the outcome never depends on row order.
"""

from __future__ import annotations

from collections.abc import Sequence

import aiosqlite

from annotation_review.errors import NoEligibleReviewers
from annotation_review.models import Capability, EligibleReviewer
from annotation_review.permissions import PermissionOracle

_PENDING_WORKLOAD_SQL = """
SELECT reviewer_id, COUNT(*) AS pending_count
FROM reviews
WHERE project_id = ? AND status = 'pending'
GROUP BY reviewer_id
"""


async def get_eligible_reviewers(
    db: aiosqlite.Connection,
    permissions: PermissionOracle,
    project_id: int,
    exclude_user_id: int | None = None,
) -> list[EligibleReviewer]:
    """Return project members allowed to review, with pending workload."""
    member_ids = await permissions.members_with(project_id, Capability.REVIEW_ANNOTATIONS)
    candidates = sorted({user_id for user_id in member_ids if user_id != exclude_user_id})
    if not candidates:
        return []
    cursor = await db.execute(_PENDING_WORKLOAD_SQL, (project_id,))
    workload = {row["reviewer_id"]: int(row["pending_count"]) for row in await cursor.fetchall()}
    return [
        EligibleReviewer(user_id=user_id, pending_review_count=workload.get(user_id, 0))
        for user_id in candidates
    ]


def select_reviewer_by_workload(candidates: Sequence[EligibleReviewer]) -> int:
    """Pick the least-loaded reviewer; ties go to the lowest user id."""
    if not candidates:
        raise NoEligibleReviewers("No eligible reviewers available")
    chosen = min(candidates, key=lambda c: (c.pending_review_count, c.user_id))
    return chosen.user_id
