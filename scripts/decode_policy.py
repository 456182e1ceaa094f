#!/usr/bin/env python3
"""Decode one or more homeowner policy PDFs into structured JSON records."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from decoder.core.knowledge import default_knowledge_base, load_knowledge_base
from decoder.core.pipeline import decode_policies

logger = logging.getLogger("decode_policy")


def run(
    inputs: list[Path],
    claim_type: str | None = None,
    output_dir: Path | None = None,
    knowledge_path: Path | None = None,
    workers: int = 2,
) -> int:
    """Decode ``inputs`` and write results. Returns the number of degraded records."""
    t_start = time.time()
    kb = load_knowledge_base(knowledge_path) if knowledge_path else default_knowledge_base()

    documents = [path.read_bytes() for path in inputs]
    logger.info("Decoding %d document(s) with %d worker(s)", len(documents), workers)
    records = decode_policies(documents, claim_type=claim_type, max_workers=workers, kb=kb)

    degraded = 0
    for path, record in zip(inputs, records):
        if record.overall_confidence == 0 and record.parse_notes.startswith("Analysis failed"):
            degraded += 1
        logger.info(
            "%s: %s %s, risk %s, confidence %.2f, %d landmines",
            path.name,
            record.carrier,
            record.policy_type,
            record.risk_level,
            record.overall_confidence,
            len(record.landmines),
        )

        payload = record.model_dump_json(indent=2)
        if output_dir is None and len(inputs) == 1:
            print(payload)
            continue

        target_dir = output_dir or path.parent
        target_dir.mkdir(parents=True, exist_ok=True)
        out_path = target_dir / f"{path.stem}.decoded.json"
        out_path.write_text(payload)
        logger.info("Wrote %s", out_path)

    logger.info("Done in %.1fs — %d decoded, %d degraded", time.time() - t_start,
                len(records) - degraded, degraded)
    return degraded


def main() -> None:
    parser = argparse.ArgumentParser(description="Decode homeowner insurance policies")
    parser.add_argument("inputs", nargs="+", type=Path, help="Policy PDF file(s)")
    parser.add_argument("--claim-type", default=None,
                        help="Claim type hint (e.g. wind, hail, wind_hail, fire, impact)")
    parser.add_argument("--output", type=Path, default=None,
                        help="Directory for <name>.decoded.json files")
    parser.add_argument("--knowledge", type=Path, default=None,
                        help="Alternate knowledge base YAML")
    parser.add_argument("--workers", type=int, default=2,
                        help="Documents decoded concurrently")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    missing = [p for p in args.inputs if not p.is_file()]
    if missing:
        logger.error("Input not found: %s", ", ".join(str(p) for p in missing))
        sys.exit(1)

    degraded = run(args.inputs, args.claim_type, args.output, args.knowledge, args.workers)
    sys.exit(1 if degraded == len(args.inputs) else 0)


if __name__ == "__main__":
    main()
