"""
Render a stored book project YAML into a printable PDF.

The project must already have a layout artifact; covers are used when present.

Usage:
    python scripts/render_book_pdf.py \
        --project book_projects/little-helper.yaml \
        --output little_helper.pdf
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure project root is on the Python path.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bookstudio import ProjectStage, StorybookPDFBuilder  # noqa: E402
from bookstudio.pdf_generation import LayoutArtifact  # noqa: E402
from bookstudio.pipeline import CoverItem, load_mapping_file  # noqa: E402
from bookstudio.story_generation import Project  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert a stored book project YAML into a storybook PDF."
    )
    parser.add_argument(
        "--project",
        required=True,
        help="Path to the project YAML written by run_full_pipeline.py.",
    )
    parser.add_argument(
        "--output",
        required=True,
        help="Destination PDF file path.",
    )
    parser.add_argument(
        "--margin-mm",
        type=float,
        default=18.0,
        help="Page margin in millimetres (default: 18).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Timeout in seconds for downloading illustration assets (default: 30).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    project = Project.from_mapping(load_mapping_file(args.project))
    layout_content = project.artifact(ProjectStage.LAYOUT)
    if not layout_content:
        print(f"Project {project.id} has no layout yet; run the layout stage first.", file=sys.stderr)
        return 1
    layout = LayoutArtifact.from_mapping(layout_content)

    covers = {
        cover.cover_type: cover
        for cover in (
            CoverItem.from_mapping(entry)
            for entry in (project.artifact(ProjectStage.COVER) or {}).get("items") or []
        )
    }
    front = covers.get("front")
    back = covers.get("back")

    builder = StorybookPDFBuilder(margin_mm=args.margin_mm, request_timeout=args.timeout)
    exported = builder.build(
        layout,
        args.output,
        title=project.title,
        front_cover_url=front.image_url if front else None,
        back_cover_url=back.image_url if back else None,
    )

    print(f"Rendered {exported.path} ({exported.file_size} bytes)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
