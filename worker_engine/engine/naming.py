"""Branch names and conventional commit messages for work orders."""

import re

from worker_engine.enums import BranchPrefix, CommitType
from worker_engine.models.domain import WorkOrder


def slugify(text: str) -> str:
    """Lower-case ``text`` and collapse non-alphanumeric runs to single hyphens."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower())
    return slug.strip("-")


def determine_branch_prefix(issue_id: str) -> BranchPrefix:
    lowered = issue_id.lower()
    if "fix" in lowered or "bug" in lowered:
        return BranchPrefix.FIX
    if "doc" in lowered:
        return BranchPrefix.DOCS
    if "test" in lowered:
        return BranchPrefix.TEST
    if "refactor" in lowered:
        return BranchPrefix.REFACTOR
    return BranchPrefix.FEATURE


def branch_name_for(work_order: WorkOrder) -> str:
    """Working branch for a work order, e.g. ``feature/iss-42-add-retry``."""
    prefix = determine_branch_prefix(work_order.issue_id)
    return f"{prefix.value}/{slugify(work_order.issue_id)}"


def determine_commit_type(issue_id: str) -> CommitType:
    lowered = issue_id.lower()
    if "fix" in lowered or "bug" in lowered:
        return CommitType.FIX
    if "doc" in lowered:
        return CommitType.DOCS
    if "test" in lowered:
        return CommitType.TEST
    if "refactor" in lowered:
        return CommitType.REFACTOR
    if "perf" in lowered:
        return CommitType.PERF
    if "style" in lowered:
        return CommitType.STYLE
    if "chore" in lowered:
        return CommitType.CHORE
    return CommitType.FEAT


def describe_issue(issue_id: str) -> str:
    """Readable description from an issue id: ``ISS-42-add-retry`` -> ``add retry``."""
    description = re.sub(r"^ISS-\d+-?", "", issue_id).replace("-", " ").strip()
    return description or issue_id


def format_commit_message(work_order: WorkOrder) -> str:
    """Conventional commit message referencing the work order's issue.

    Example:
        ``feat(retry): implement add retry`` followed by a blank line and
        ``Refs: #ISS-42-add-retry``.
    """
    commit_type = determine_commit_type(work_order.issue_id)
    component = work_order.context.sds_component
    scope = f"({component})" if component else ""
    return (
        f"{commit_type.value}{scope}: implement {describe_issue(work_order.issue_id)}\n\n"
        f"Refs: #{work_order.issue_id}"
    )
