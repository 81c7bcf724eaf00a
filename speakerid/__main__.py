"""Command-line interface for speaker enrollment and verification.

Usage:
    python -m speakerid enroll speaker.wav
    python -m speakerid verify attempt.wav
    python -m speakerid export cluster.bin
    python -m speakerid wipe
"""

import argparse
import logging
import sys
from pathlib import Path

from .context import SpeakerIdContext
from .exceptions import SpeakerIdError
from .settings import SpeakerIdSettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speakerid",
        description="On-device speaker enrollment and verification",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory holding the speaker model files",
    )
    parser.add_argument(
        "--models-dir",
        type=Path,
        default=None,
        help="Directory holding the sherpa-onnx models",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    enroll = sub.add_parser("enroll", help="Enroll from a 16 kHz mono WAV file")
    enroll.add_argument("wav", type=Path)

    verify = sub.add_parser("verify", help="Verify a 16 kHz mono WAV file")
    verify.add_argument("wav", type=Path)

    export = sub.add_parser("export", help="Write the enrolled cluster as a portable blob")
    export.add_argument("output", type=Path)
    export.add_argument(
        "--append-mean",
        action="store_true",
        help="Store the running mean as an extra row",
    )

    sub.add_parser("wipe", help="Delete the persisted speaker model")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, object] = {}
    if args.data_dir is not None:
        overrides["data_dir"] = args.data_dir
    if args.models_dir is not None:
        overrides["models_dir"] = args.models_dir
    settings = SpeakerIdSettings(**overrides)

    try:
        with SpeakerIdContext.from_models(settings) as ctx:
            if args.command == "enroll":
                result = ctx.onboard_from_wav(args.wav)
                print(f"Enrolled: K={result.cluster_size} D={result.embedding_dim}")

            elif args.command == "verify":
                verification = ctx.verify_from_wav(args.wav)
                if verification is None:
                    print("No voiced utterance found")
                    return 1
                print(
                    f"score={verification.best_score:.4f} "
                    f"strategy={verification.best_strategy} "
                    f"target={verification.best_target_label} "
                    f"voiced={verification.voiced_sec:.2f}s"
                )

            elif args.command == "export":
                blob = ctx.get_cluster(append_mean=args.append_mean)
                args.output.write_bytes(blob)
                print(f"Wrote {len(blob)} bytes to {args.output}")

            elif args.command == "wipe":
                ctx.wipe_all_targets_and_reset()
                print("Speaker model wiped")

    except SpeakerIdError as e:
        print(f"[ERROR] {e.kind.value}: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
