"""CLI to ingest a folder of page images and print grouping proposals as JSON.

Images are hashed and cached exactly as in an interactive session; nothing is
confirmed, so the output is a preview of what each strategy would suggest.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, cast

import typer

from quire.config import load_settings
from quire.models import GroupingProposal
from quire.scanner import scan_roots
from quire.services import IngestSource, ProcessWarning, QuireSession, open_session
from utils.logging import get_logger

LOGGER = get_logger(__name__)

Strategy = Literal["filename", "folder", "phash", "profile", "individual"]
STRATEGIES: tuple[str, ...] = ("filename", "folder", "phash", "profile", "individual")


def _run_strategy(session: QuireSession, strategy: Strategy) -> tuple[list[GroupingProposal], list[ProcessWarning]]:
    if strategy == "filename":
        return session.grouping.run_filename_grouping(), []
    if strategy == "folder":
        return session.grouping.run_leaf_folder_grouping(), []
    if strategy == "individual":
        return session.grouping.run_individual_grouping(), []
    if strategy == "phash":
        run = session.grouping.run_perceptual_hash_grouping()
    else:
        run = session.grouping.run_visual_profile_grouping()
    return run.proposals, run.warnings


def main(
    root: list[Path] = typer.Option(
        ...,
        "--root",
        file_okay=False,
        dir_okay=True,
        exists=True,
        readable=True,
        help="Folder of page images to scan. May be specified multiple times.",
    ),
    strategy: str = typer.Option(
        "filename",
        "--strategy",
        "-s",
        help="Grouping strategy: filename, folder, phash, profile or individual.",
    ),
    memory_cache: bool = typer.Option(
        False,
        "--memory-cache",
        help="Keep artefacts in memory instead of the cache database from settings.yaml.",
    ),
) -> None:
    """Ingest image folders and print grouping proposals for one strategy."""

    if strategy not in STRATEGIES:
        raise typer.BadParameter(f"strategy must be one of {', '.join(STRATEGIES)}", param_hint="--strategy")

    settings = load_settings()
    if memory_cache:
        settings.cache.backend = "memory"

    files = list(scan_roots(root))
    sources = [
        IngestSource(data=info.path.read_bytes(), label=info.label, structural_path=info.structural_path)
        for info in files
    ]

    with open_session(settings) as session:
        ingest = session.ingest.ingest(sources)
        proposals, warnings = _run_strategy(session, cast(Strategy, strategy))
        labels = {image.id: image.label for image in session.project.images}

    payload = {
        "strategy": strategy,
        "images": len(ingest.images),
        "proposals": [
            {
                "id": proposal.id,
                "image_ids": list(proposal.image_ids),
                "labels": [labels.get(image_id) for image_id in proposal.image_ids],
                "reason": proposal.reason,
                "confidence": proposal.confidence,
            }
            for proposal in proposals
        ],
        "warnings": [
            {"image_id": warning.image_id, "label": warning.label, "code": warning.code, "message": warning.message}
            for warning in [*ingest.warnings, *warnings]
        ],
    }
    LOGGER.info(
        "propose_complete",
        extra={"strategy": strategy, "files": len(files), "proposals": len(proposals)},
    )
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    typer.run(main)
