"""
CLI entry point for loading a course bundle into the training store.

A bundle is a JSON file:
    {"course": {curator_id, title, description, join_code?, max_learners?, steps: [...]},
     "fragments": [{position, content, section_title, tags}, ...]}
"""

import argparse
import json
from pathlib import Path
from typing import List, Tuple

from adapt.core.models import Course, KnowledgeFragment
from adapt.storage.store import TrainingStore
from adapt.shared.config import settings
from adapt.shared.logging import get_logger, setup_logging

logger = get_logger(__name__)


def load_bundle(path: Path) -> Tuple[Course, List[KnowledgeFragment]]:
    """Parse and validate a course bundle file."""
    data = json.loads(path.read_text(encoding="utf-8"))
    course = Course.model_validate(data["course"])
    fragments = [KnowledgeFragment.model_validate(f) for f in data.get("fragments", [])]
    return course, fragments


def seed(path: Path, db_path: Path) -> Course:
    course, fragments = load_bundle(path)
    store = TrainingStore(db_path)
    published = store.publish_course(course, fragments)
    logger.info(f"Seeded course {published.id} from {path}")
    return published


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Load a course bundle into ADAPT")
    parser.add_argument("bundle", type=Path, help="Course bundle JSON file")
    parser.add_argument(
        "--db-path",
        type=Path,
        default=Path(settings.storage.db_path),
        help="Training store SQLite path"
    )

    args = parser.parse_args()

    setup_logging()

    course = seed(args.bundle, args.db_path)

    print("\n" + "=" * 50)
    print("Course Seed Summary")
    print("=" * 50)
    print(f"Course id: {course.id}")
    print(f"Title: {course.title}")
    print(f"Join code: {course.join_code}")
    if course.max_learners is not None:
        print(f"Learner limit: {course.max_learners}")
    print(f"Steps: {course.total_steps}")
    print(f"Fragments: {len(TrainingStore(args.db_path).list_fragments(course.id))}")
    print("=" * 50)


if __name__ == "__main__":
    main()
