"""Structured JSON logger for pipeline observability.

This module writes one JSON object per line to pipeline.log in the output
directory and mirrors a one-line summary to the console logger.

Log Event Types:
- session_start: Generation session begins for a request
- attempt_start / attempt_accepted / attempt_rejected / attempt_failure:
  One generate-then-validate cycle and its outcome
- enrichment_start / asset_failure / enrichment_complete: Asset synthesis
- pipeline_complete / pipeline_error: Request-level outcome

Every entry carries ``event``, ``timestamp`` (UTC, ISO-8601) and, when known,
``request_id``.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


class StructuredJSONLogger:
    """Structured JSON logger that writes to pipeline.log.

    Each entry follows the format:

    {
        "event": "attempt_rejected",
        "timestamp": "ISO8601",
        "request_id": "string",
        ...additional fields based on event type...
    }

    The logger keeps both a file handle for JSON entries and a console
    handler for human-readable lines.
    """

    def __init__(self, output_directory: Optional[str] = None):
        """Initialize the structured JSON logger.

        Args:
            output_directory: Directory where pipeline.log will be written.
                            If None, only console logging is enabled.
        """
        self.output_directory = output_directory
        self.log_file_path: Optional[Path] = None
        self.json_file_handle = None

        if output_directory:
            self._setup_log_file(output_directory)

        self.logger = logging.getLogger(__name__)
        if not self.logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)
            self.logger.setLevel(logging.INFO)

    def _setup_log_file(self, output_directory: str) -> None:
        output_path = Path(output_directory)
        output_path.mkdir(parents=True, exist_ok=True)

        self.log_file_path = output_path / "pipeline.log"
        self.json_file_handle = open(self.log_file_path, 'a', encoding='utf-8')

    def _write_json_log(self, log_entry: Dict[str, Any]) -> None:
        if self.json_file_handle:
            json_line = json.dumps(log_entry, ensure_ascii=False)
            self.json_file_handle.write(json_line + '\n')
            self.json_file_handle.flush()

    def _entry(self, event: str, request_id: Optional[str], **fields: Any) -> Dict[str, Any]:
        log_entry: Dict[str, Any] = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if request_id is not None:
            log_entry["request_id"] = request_id
        log_entry.update(fields)
        self._write_json_log(log_entry)
        return log_entry

    @staticmethod
    def _prefix(request_id: Optional[str]) -> str:
        return f"[{request_id}] " if request_id else ""

    def log_session_start(self, outline: str, max_attempts: int, request_id: Optional[str] = None) -> None:
        """Log the start of a generation session.

        Args:
            outline: Lesson outline (truncated to 200 characters in the entry)
            max_attempts: Attempt budget of the session
            request_id: Optional request identifier
        """
        self._entry("session_start", request_id, outline=outline[:200], max_attempts=max_attempts)
        self.logger.info(f"{self._prefix(request_id)}Starting generation session ({max_attempts} attempts max)")

    def log_attempt_start(self, attempt: int, max_attempts: int, request_id: Optional[str] = None) -> None:
        self._entry("attempt_start", request_id, attempt=attempt, max_attempts=max_attempts)
        self.logger.info(f"{self._prefix(request_id)}Attempt {attempt}/{max_attempts}")

    def log_attempt_accepted(
        self,
        attempt: int,
        duration_ms: float,
        block_count: int,
        request_id: Optional[str] = None
    ) -> None:
        """Log an attempt whose candidate passed validation.

        Args:
            attempt: 1-based attempt number
            duration_ms: Generate-plus-validate duration in milliseconds
            block_count: Number of blocks in the compiled document
            request_id: Optional request identifier
        """
        self._entry(
            "attempt_accepted",
            request_id,
            attempt=attempt,
            duration_ms=round(duration_ms, 2),
            block_count=block_count
        )
        self.logger.info(
            f"{self._prefix(request_id)}Attempt {attempt} accepted in {duration_ms:.2f}ms "
            f"({block_count} blocks)"
        )

    def log_attempt_rejected(
        self,
        attempt: int,
        diagnostics: List[str],
        attempts_remaining: int,
        duration_ms: float,
        request_id: Optional[str] = None
    ) -> None:
        """Log an attempt whose candidate failed validation.

        Args:
            attempt: 1-based attempt number
            diagnostics: Ordered diagnostics of the attempt
            attempts_remaining: Attempts left after this one
            duration_ms: Generate-plus-validate duration in milliseconds
            request_id: Optional request identifier
        """
        self._entry(
            "attempt_rejected",
            request_id,
            attempt=attempt,
            diagnostic_count=len(diagnostics),
            diagnostics=diagnostics,
            attempts_remaining=attempts_remaining,
            duration_ms=round(duration_ms, 2)
        )
        first = diagnostics[0] if diagnostics else ""
        self.logger.warning(
            f"{self._prefix(request_id)}Attempt {attempt} rejected with "
            f"{len(diagnostics)} diagnostic(s), {attempts_remaining} left: {first}"
        )

    def log_attempt_failure(
        self,
        attempt: int,
        error_code: str,
        error_message: str,
        request_id: Optional[str] = None
    ) -> None:
        """Log a generation failure that aborts the session.

        Args:
            attempt: 1-based attempt number
            error_code: Machine-readable error code
            error_message: Human-readable error message
            request_id: Optional request identifier
        """
        self._entry(
            "attempt_failure",
            request_id,
            attempt=attempt,
            error_code=error_code,
            error_message=error_message
        )
        self.logger.error(f"{self._prefix(request_id)}Attempt {attempt} failed [{error_code}]: {error_message}")

    def log_enrichment_start(self, prompt_count: int, request_id: Optional[str] = None) -> None:
        self._entry("enrichment_start", request_id, prompt_count=prompt_count)
        self.logger.info(f"{self._prefix(request_id)}Synthesizing {prompt_count} asset(s)")

    def log_asset_failure(
        self,
        block_index: int,
        media_kind: str,
        error_code: str,
        error_message: str,
        stage: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> None:
        fields: Dict[str, Any] = {
            "block_index": block_index,
            "media_kind": media_kind,
            "error_code": error_code,
            "error_message": error_message,
        }
        if stage:
            fields["stage"] = stage
        self._entry("asset_failure", request_id, **fields)
        self.logger.warning(
            f"{self._prefix(request_id)}Asset for block {block_index} failed [{error_code}]: {error_message}"
        )

    def log_enrichment_complete(
        self,
        success_count: int,
        failure_count: int,
        duration_ms: float,
        request_id: Optional[str] = None
    ) -> None:
        self._entry(
            "enrichment_complete",
            request_id,
            success_count=success_count,
            failure_count=failure_count,
            duration_ms=round(duration_ms, 2)
        )
        self.logger.info(
            f"{self._prefix(request_id)}Enrichment finished: {success_count} succeeded, "
            f"{failure_count} failed in {duration_ms:.2f}ms"
        )

    def log_pipeline_complete(
        self,
        status: str,
        duration_seconds: float,
        request_id: Optional[str] = None,
        attempts: Optional[int] = None
    ) -> None:
        """Log the final status of a request.

        Args:
            status: Terminal request status (complete, degraded, failed)
            duration_seconds: Total processing time in seconds
            request_id: Optional request identifier
            attempts: Optional number of generation attempts used
        """
        fields: Dict[str, Any] = {"status": status, "duration_seconds": round(duration_seconds, 2)}
        if attempts is not None:
            fields["attempts"] = attempts
        self._entry("pipeline_complete", request_id, **fields)
        self.logger.info(
            f"{self._prefix(request_id)}Pipeline completed with status {status} in {duration_seconds:.2f}s"
        )

    def log_pipeline_error(
        self,
        error_type: str,
        error_message: str,
        stage: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> None:
        """Log a pipeline-level error.

        Args:
            error_type: Type of error (exception class name or failure reason)
            error_message: Error message
            stage: Optional pipeline stage where the error occurred
            request_id: Optional request identifier
        """
        fields: Dict[str, Any] = {"error_type": error_type, "error_message": error_message}
        if stage:
            fields["stage"] = stage
        self._entry("pipeline_error", request_id, **fields)
        self.logger.error(f"{self._prefix(request_id)}Pipeline error: {error_message}")

    def close(self) -> None:
        """Close the log file handle."""
        if self.json_file_handle:
            self.json_file_handle.close()
            self.json_file_handle = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
