"""Read-only access to a project's feature -> milestone -> goal tree.

The execution loop only reads the tree. import_project_tree() seeds it from
a YAML document shaped like:

    id: shop
    name: Shop
    prompt: Build a small web shop
    features:
      - id: f1
        title: Catalog
        milestones:
          - id: m1
            title: Listing
            goals:
              - id: g1
                title: Implement product list endpoint
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Protocol, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from taskpilot.core.exceptions import ConfigError
from taskpilot.core.models import Feature, Goal, Milestone, Project
from taskpilot.db.repository import Repository

logger = logging.getLogger("taskpilot.orchestrator.project_tree")


class ProjectTree(Protocol):
    def get_project(self, project_id: str) -> Optional[Project]: ...

    def features(self, project_id: str) -> list[Feature]: ...

    def milestones(self, feature_id: str) -> list[Milestone]: ...

    def goals(self, milestone_id: str) -> list[Goal]: ...


class RepositoryProjectTree:
    """ProjectTree over the projects/features/milestones/goals tables."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def get_project(self, project_id: str) -> Optional[Project]:
        return self.repository.get_project(project_id)

    def features(self, project_id: str) -> list[Feature]:
        return self.repository.list_features(project_id)

    def milestones(self, feature_id: str) -> list[Milestone]:
        return self.repository.list_milestones(feature_id)

    def goals(self, milestone_id: str) -> list[Goal]:
        return self.repository.list_goals(milestone_id)


def iter_incomplete_goals(
    tree: ProjectTree, project_id: str
) -> list[tuple[Feature, Milestone, Goal]]:
    """Walk the tree depth-first and collect goals not yet completed.

    A completed feature or milestone hides everything beneath it.
    """
    found: list[tuple[Feature, Milestone, Goal]] = []
    for feature in tree.features(project_id):
        if feature.completed:
            continue
        for milestone in tree.milestones(feature.id):
            if milestone.completed:
                continue
            for goal in tree.goals(milestone.id):
                if not goal.completed:
                    found.append((feature, milestone, goal))
    return found


def load_project_tree_document(source: Union[str, Path]) -> dict[str, Any]:
    path = Path(source)
    if not path.exists():
        raise ConfigError(f"Project file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Project file {path} must contain a mapping")
    return data


def import_project_tree(repository: Repository, document: dict[str, Any]) -> Project:
    """Upsert a project and its whole tree from a parsed YAML document.

    Returns:
        The imported Project.

    Raises:
        ConfigError: If the document is missing ids or titles.
    """
    try:
        project = Project(
            id=str(document["id"]),
            name=document.get("name") or str(document["id"]),
            prompt=document.get("prompt") or "",
        )
        repository.upsert_project(project)

        goal_count = 0
        for f_doc in document.get("features") or []:
            feature = Feature(
                id=str(f_doc["id"]),
                project_id=project.id,
                title=f_doc["title"],
                description=f_doc.get("description"),
                completed=bool(f_doc.get("completed", False)),
            )
            repository.upsert_feature(feature)
            for m_doc in f_doc.get("milestones") or []:
                milestone = Milestone(
                    id=str(m_doc["id"]),
                    feature_id=feature.id,
                    title=m_doc["title"],
                    description=m_doc.get("description"),
                    completed=bool(m_doc.get("completed", False)),
                )
                repository.upsert_milestone(milestone)
                for g_doc in m_doc.get("goals") or []:
                    repository.upsert_goal(Goal(
                        id=str(g_doc["id"]),
                        milestone_id=milestone.id,
                        title=g_doc["title"],
                        description=g_doc.get("description"),
                        completed=bool(g_doc.get("completed", False)),
                    ))
                    goal_count += 1
    except KeyError as e:
        raise ConfigError(f"Project document is missing required key {e}") from e
    except (PydanticValidationError, TypeError) as e:
        raise ConfigError(f"Invalid project document: {e}") from e

    logger.info("Imported project %s with %d goal(s)", project.id, goal_count)
    return project
