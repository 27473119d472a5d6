"""Main application entry point for ScribeLink."""

import sys
import time
import asyncio
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from pubsub import pub
from rich.console import Console
from rich.table import Table

from .audio.capture import check_microphone_available
from .config import ScribeLinkConfig
from .errors import ScribeLinkError
from .models.events import UploadProgressEvent, UploadStatus
from .services.recording_service import RecordingService

logger = logging.getLogger(__name__)

STATE_STYLES = {
    "recorded": "white",
    "uploading": "cyan",
    "uploaded": "green",
    "verified": "bold green",
    "failed": "bold red",
}


class ScribeLinkApp:
    """Command line front end around the recording service."""

    def __init__(self, config_path: str, log_level: str = None):
        # Load configuration
        self.config = ScribeLinkConfig(config_path)
        # Set up logging (command line overrides config)
        setup_logging(self.config, log_level or self.config.get('logging.level', 'INFO'))
        self.console = Console()
        self.service = RecordingService(self.config)
        pub.subscribe(self._on_upload_progress, self.service.progress_publisher.topic)

    def _on_upload_progress(self, event: UploadProgressEvent) -> None:
        if event.status == UploadStatus.FAILED:
            self.console.print(f"❌ Segment {event.sequence_number} failed: {event.error}", style="red")
        elif event.status == UploadStatus.RETRYING:
            self.console.print(f"🔁 Segment {event.sequence_number} will be retried "
                               f"(attempt {event.retry_count} failed)", style="yellow")
        elif event.status == UploadStatus.UPLOADED:
            self.console.print(f"✅ Segment {event.sequence_number} uploaded "
                               f"({event.queue_depth} outstanding)", style="green")

    def record(self, subject_id: str, owner_id: str, duration: int, session_id: str = None) -> int:
        """Record for a fixed duration, then stop and wait for uploads."""
        if not check_microphone_available():
            self.console.print("❌ Cannot proceed: Microphone not available", style="bold red")
            return 1

        if session_id:
            result = self.service.resume_session(session_id)
        else:
            result = self.service.start_recording(subject_id, owner_id)
        if not result["success"]:
            self.console.print(f"❌ Failed to start recording: {result['error']}", style="bold red")
            return 1

        self.console.print(f"🔴 Recording session {result['session_id']} for {duration}s...", style="bold red")
        try:
            time.sleep(duration)
        except KeyboardInterrupt:
            self.console.print("\n🛑 Recording interrupted, stopping...", style="yellow")

        self.console.print("⏹️  Stopping, waiting for uploads to finish...", style="bold yellow")
        stop_result = self.service.stop_recording()
        self._print_stop_summary(stop_result)
        return 0 if stop_result.get("safely_stopped") else 2

    def _print_stop_summary(self, result: dict) -> None:
        style = "bold green" if result.get("safely_stopped") else "bold yellow"
        self.console.print(f"Session {result['session_id']}: {result['status']}", style=style)
        self.console.print(f"   Duration: {result['duration_seconds']:.1f}s")
        self.console.print(f"   Segments: {result['total_segments']} "
                           f"(confirmed {result['confirmed_segments']}, failed {result['failed_segments']}, "
                           f"pending {result['pending_segments']})")
        if not result.get("safely_stopped"):
            self.console.print("⚠️  Some segments are still waiting to upload; run 'scribelink resume-uploads' "
                               "once connectivity is back", style="yellow")

    def resume_uploads(self, timeout: float) -> int:
        """Finish whatever a previous run left in the upload queue."""
        pending = self.service.pipeline.resume_pending_uploads()
        if pending == 0:
            self.console.print("✅ Nothing to upload", style="green")
            return 0
        self.console.print(f"📤 Uploading {pending} pending segments...", style="blue")
        drained = asyncio.run(self.service.pipeline.drain(timeout))
        remaining = self.service.pipeline.queue_depth
        if drained:
            self.console.print("✅ Upload queue drained", style="bold green")
            return 0
        self.console.print(f"⚠️  {remaining} segments still pending", style="yellow")
        return 2

    def retry_failed(self, segment_id: str, session_id: str, timeout: float) -> int:
        reset = self.service.retry_failed(segment_id=segment_id, session_id=session_id)
        self.console.print(f"🔁 Reset {reset} failed segments")
        if reset == 0:
            return 0
        return self.resume_uploads(timeout)

    def show_status(self, session_id: str) -> int:
        summary = self.service.session_manager.get_session_summary(session_id)
        if not summary["success"]:
            self.console.print(f"❌ {summary['error']}", style="red")
            return 1

        session = summary["session"]
        self.console.print(f"Session {session_id} - {session['status']}", style="bold blue")
        self.console.print(f"   Subject: {session['subject_id']}  Owner: {session['owner_id']}")
        self.console.print(f"   Recorded: {session['recorded_seconds']:.1f}s in "
                           f"{len(session['recording_files'])} recording file(s)")

        table = Table(title="Segments")
        table.add_column("Seq", justify="right")
        table.add_column("State")
        table.add_column("Retries", justify="right")
        table.add_column("Size", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error")
        for row in self.service.get_segment_statuses(session_id):
            table.add_row(
                str(row["sequence_number"]),
                f"[{STATE_STYLES.get(row['state'], 'white')}]{row['state']}[/]",
                str(row["retry_count"]),
                f"{row['size_bytes']:,}",
                f"{row['duration_seconds']:.2f}s",
                row["error"] or "",
            )
        self.console.print(table)
        return 0

    def sync(self, session_id: str) -> int:
        verified = asyncio.run(self.service.pipeline.sync_confirmations(session_id))
        self.console.print(f"✅ {verified} segments verified", style="green")
        return 0

    def cleanup_verified(self, days: int) -> int:
        removed = self.service.store.cleanup_old_verified(days)
        self.console.print(f"🧹 Removed {removed} verified segments older than {days} days")
        return 0

    def cleanup(self) -> None:
        try:
            pub.unsubscribe(self._on_upload_progress, self.service.progress_publisher.topic)
        except Exception as e:
            logger.warning(f"Error during unsubscribe: {e}")
        self.service.cleanup()


def setup_logging(config, level: str = "INFO") -> None:
    """Set up logging configuration from YAML config."""
    # Get log file path from config
    log_file_path = config.get('logging.file_path',
                               str(Path(config.get_data_directory()) / 'logs' / 'scribelink.log'))
    console_output = config.get('logging.console_output', True)

    # Create logs directory if it doesn't exist
    Path(log_file_path).parent.mkdir(parents=True, exist_ok=True)

    handlers = []

    # File handler - always write to file
    file_handler = logging.FileHandler(log_file_path)
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    file_handler.setFormatter(file_formatter)
    handlers.append(file_handler)

    # Console handler - only if enabled in config
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)  # Only show warnings and above on console
        console_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in handlers:
        root_logger.addHandler(handler)

    logger.info("=" * 50)
    logger.info("ScribeLink starting up")
    logger.info(f"Log file: {log_file_path}")
    logger.info(f"Log level set to: {level}")
    logger.info("=" * 50)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ScribeLink - resilient segmented recording upload",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration YAML file (default: looks for scribelink.yaml)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging level (default: from config, else INFO)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="ScribeLink v0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    record = subparsers.add_parser("record", help="Record for a fixed duration, then stop and upload")
    record.add_argument("--subject", help="Identifier of the recorded subject (required unless --resume)")
    record.add_argument("--owner", help="Identifier of the recording user (required unless --resume)")
    record.add_argument("--duration", type=int, default=10, help="Recording duration in seconds (default: 10)")
    record.add_argument("--resume", metavar="SESSION_ID", help="Continue an existing session instead of creating one")

    resume = subparsers.add_parser("resume-uploads", help="Upload segments left pending by a previous run")
    resume.add_argument("--timeout", type=float, default=300.0, help="Give up after this many seconds")

    retry = subparsers.add_parser("retry-failed", help="Reset failed segments and upload them again")
    retry.add_argument("--segment", help="Only retry this segment id")
    retry.add_argument("--session", help="Only retry failed segments of this session")
    retry.add_argument("--timeout", type=float, default=300.0, help="Give up after this many seconds")

    status = subparsers.add_parser("status", help="Show per-segment upload status of a session")
    status.add_argument("session_id")

    sync = subparsers.add_parser("sync", help="Mark segments the backend has confirmed as verified")
    sync.add_argument("session_id")

    cleanup = subparsers.add_parser("cleanup", help="Delete verified segments older than N days")
    cleanup.add_argument("--days", type=int, help="Retention in days (default: storage.verified_retention_days)")

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the command line; a new recording needs a subject and an owner, a resumed one does not."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "record" and not args.resume and not (args.subject and args.owner):
        parser.error("record requires --subject and --owner unless --resume is given")
    return args


def main() -> None:
    """Main entry point for ScribeLink."""
    args = parse_args()

    app = None
    exit_code = 0
    try:
        app = ScribeLinkApp(args.config, args.log_level)
        if args.command == "record":
            exit_code = app.record(args.subject, args.owner, args.duration, args.resume)
        elif args.command == "resume-uploads":
            exit_code = app.resume_uploads(args.timeout)
        elif args.command == "retry-failed":
            exit_code = app.retry_failed(args.segment, args.session, args.timeout)
        elif args.command == "status":
            exit_code = app.show_status(args.session_id)
        elif args.command == "sync":
            exit_code = app.sync(args.session_id)
        elif args.command == "cleanup":
            days = args.days if args.days is not None else int(app.config.get('storage.verified_retention_days', 7))
            exit_code = app.cleanup_verified(days)
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")
    except (ScribeLinkError, FileNotFoundError, ValueError) as e:
        print(f"❌ Error: {e}")
        logging.error(f"Application error: {e}", exc_info=True)
        exit_code = 1
    finally:
        if app is not None:
            app.cleanup()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
