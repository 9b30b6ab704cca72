import sys
import json
import argparse
from pathlib import Path
from typing import Optional, List
import structlog

from . import config
from .audit import JsonFileAuditGateway
from .constants import IMAGE_EXTENSIONS
from .data_models import DocumentType, Modality, VerificationResult
from .exceptions import CaptureRejected, IdVerifyError, ScoringUnavailable
from .imaging import decode_image
from .logging_config import configure_logging
from .pipeline import IdentityVerifier
from .quality import QualityGate
from .session import JsonFileSessionStore

# Initialize structured logger
logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_VERIFIED = 2


class IdVerifyCLI:
    """Main command-line interface for the IDVERIFY system."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="idverify",
            description="IDVERIFY - Selfie to identity document face verification",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--log-level",
            default=None,
            help=f"Log level (default: {config.LOG_LEVEL}).",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Print machine readable JSON instead of a summary.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        self._add_assess_command(subparsers)
        self._add_verify_command(subparsers)
        self._add_history_command(subparsers)
        subparsers.add_parser("stats", help="Show aggregate verification statistics.")

        return parser

    def _add_assess_command(self, subparsers) -> None:
        """Add the 'assess' command and its arguments."""
        assess_parser = subparsers.add_parser(
            "assess", help="Run the quality gate on a single capture."
        )
        assess_parser.add_argument("image", type=Path, help="Captured image file.")
        assess_parser.add_argument(
            "--modality",
            choices=[m.value for m in Modality],
            default=Modality.SELFIE.value,
            help="Kind of capture. Default: selfie.",
        )

    def _add_verify_command(self, subparsers) -> None:
        """Add the 'verify' command and its arguments."""
        verify_parser = subparsers.add_parser(
            "verify", help="Verify a selfie against an identity document photo."
        )
        verify_parser.add_argument("selfie", type=Path, help="Selfie image file.")
        verify_parser.add_argument("document", type=Path, help="Document photo file.")
        verify_parser.add_argument(
            "--document-type",
            choices=[t.value for t in DocumentType],
            default=DocumentType.CNH.value,
            help="Identity document type. Default: CNH.",
        )
        verify_parser.add_argument(
            "--device-info",
            default=config.DEFAULT_DEVICE_INFO,
            help="Device description stored with the audit record.",
        )

    def _add_history_command(self, subparsers) -> None:
        """Add the 'history' command and its arguments."""
        history_parser = subparsers.add_parser(
            "history", help="List the most recent stored verifications."
        )
        history_parser.add_argument(
            "--limit", type=int, default=10, help="Number of records. Default: 10."
        )

    @staticmethod
    def _read_image(path: Path) -> bytes:
        if path.suffix.lower() not in IMAGE_EXTENSIONS:
            raise IdVerifyError(
                f"Unsupported image extension '{path.suffix}'",
                context={"path": str(path), "supported": list(IMAGE_EXTENSIONS)},
                error_code="CLI_001",
            )
        if not path.is_file():
            raise IdVerifyError(
                f"Image file not found: {path}", context={"path": str(path)}, error_code="CLI_002"
            )
        return path.read_bytes()

    def _execute_assess_command(self, args: argparse.Namespace) -> int:
        gate = QualityGate()
        assessment = gate.assess(decode_image(self._read_image(args.image)), args.modality)

        if args.json:
            print(json.dumps(assessment.to_dict(), indent=2))
        else:
            print(f"Modality: {assessment.modality.value}")
            print(f"Detected: {assessment.detected}")
            print(f"Quality: {assessment.quality:.1f} (floor {gate.acceptance_floor:.0f})")
            for name, passed in assessment.checks.items():
                print(f"  {name:<18} {'ok' if passed else 'FAILED'}")
            print(f"Message: {assessment.message}")
            for issue in assessment.issues:
                print(f"  - {issue}")

        return EXIT_OK if assessment.is_acceptable(gate.acceptance_floor) else EXIT_NOT_VERIFIED

    def _execute_verify_command(self, args: argparse.Namespace) -> int:
        verifier = IdentityVerifier(
            session_store=JsonFileSessionStore(config.SESSION_CACHE_PATH),
            audit_gateway=JsonFileAuditGateway(config.AUDIT_STORE_PATH),
            device_info=args.device_info,
        )
        try:
            session = verifier.start()
            verifier.capture_selfie(self._read_image(args.selfie))
            verifier.capture_document(
                self._read_image(args.document), DocumentType(args.document_type)
            )
            result = verifier.run_verification()
        except (CaptureRejected, ScoringUnavailable) as e:
            print(f"\n{e.user_message}", file=sys.stderr)
            logger.info("Verification not completed", **e.to_dict())
            return EXIT_NOT_VERIFIED
        finally:
            verifier.close()

        self._display_result(session.id, result, args.json)
        return EXIT_OK if result.passed else EXIT_NOT_VERIFIED

    def _display_result(self, session_id: str, result: VerificationResult, as_json: bool) -> None:
        """Display a summary of a verification result."""
        if as_json:
            print(json.dumps({"session_id": session_id, **result.to_dict()}, indent=2))
            return

        print("\n" + "=" * 60)
        print("IDVERIFY - VERIFICATION RESULT")
        print("=" * 60)
        print(f"Session ID: {session_id}")
        print(f"Decision: {'APPROVED' if result.passed else 'REJECTED'}")
        print(f"Score: {result.score:.2f} (required {result.required_score:.2f})")
        print(f"Votes: {result.ensemble_agreement} (required {result.required_votes})")
        print(f"Confidence: {result.confidence.value}")
        if result.algorithms:
            for name, algorithm in result.algorithms.present().items():
                print(
                    f"  {name:<11} score={algorithm.score:.3f} "
                    f"threshold={algorithm.threshold:.3f} matched={algorithm.matched}"
                )
        for name, reason in result.dropped_scorers.items():
            print(f"  {name:<11} dropped: {reason}")
        print("=" * 60)

    def _execute_history_command(self, args: argparse.Namespace) -> int:
        records = JsonFileAuditGateway(config.AUDIT_STORE_PATH).list_recent(args.limit)

        if args.json:
            print(json.dumps([r.to_dict() for r in records], indent=2))
            return EXIT_OK

        if not records:
            print("No stored verifications.")
        for record in records:
            print(
                f"{record.created_at.isoformat()}  {record.session_id}  "
                f"{'APPROVED' if record.passed else 'REJECTED':<8}  "
                f"score={record.similarity_score:.1f}  confidence={record.confidence}"
            )
        return EXIT_OK

    def _execute_stats_command(self, args: argparse.Namespace) -> int:
        stats = JsonFileAuditGateway(config.AUDIT_STORE_PATH).stats()

        if args.json:
            print(json.dumps(stats.to_dict(), indent=2))
        else:
            print(f"Total: {stats.total}")
            print(f"Passed: {stats.passed}")
            print(f"Failed: {stats.failed}")
            print(f"Average score: {stats.avg_score}")
        return EXIT_OK

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        commands = {
            "assess": self._execute_assess_command,
            "verify": self._execute_verify_command,
            "history": self._execute_history_command,
            "stats": self._execute_stats_command,
        }

        try:
            args = self.parser.parse_args(args_list)
            configure_logging(level=args.log_level)
            return commands[args.command](args)

        except IdVerifyError as e:
            logger.error(f"A known application error occurred: {e}", exc_info=True)
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return EXIT_ERROR
        except Exception as e:
            logger.error(f"An unexpected fatal error occurred: {e}", exc_info=True)
            print(f"\n[FATAL ERROR] An unexpected error occurred: {e}", file=sys.stderr)
            return EXIT_ERROR
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    cli = IdVerifyCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
