import logging
from typing import Any, Dict, List, Optional

import backoff
import gspread
from oauth2client.service_account import ServiceAccountCredentials

from rewards_tracker.config import SheetsSettings
from rewards_tracker.models import Disposal, LedgerSnapshot, Lot, SweepTask

logger = logging.getLogger(__name__)

SCOPE = [
    'https://spreadsheets.google.com/feeds',
    'https://www.googleapis.com/auth/drive'
]


def _is_rate_limit_error(e: Exception) -> bool:
    """Check if an exception is a Google Sheets rate limit error."""
    error_str = str(e)
    error_type = type(e).__name__
    return '429' in error_str or 'Quota exceeded' in error_str or 'APIError' in error_type


def _on_backoff(details):
    logger.warning("Sheets call failed (attempt %d), retrying in %.1fs", details['tries'], details['wait'])


class SheetsReportExporter:
    """Writes a ledger snapshot to Lots, Disposals and Sweeps worksheets."""

    LOTS_SHEET = "Lots"
    DISPOSALS_SHEET = "Disposals"
    SWEEPS_SHEET = "Sweeps"

    def __init__(self, settings: Optional[SheetsSettings] = None, sheets_client=None):
        self.config = settings or SheetsSettings()
        if not self.config.report_sheet_id:
            raise ValueError("REPORT_SHEET_ID is required for report export")
        self.sheet_id = self.config.report_sheet_id

        if sheets_client is None:
            if not self.config.google_credentials:
                raise ValueError("REPORT_GOOGLE_CREDENTIALS is required for report export")
            creds = ServiceAccountCredentials.from_json_keyfile_name(self.config.google_credentials, SCOPE)
            sheets_client = gspread.authorize(creds)
        self.sheets_client = sheets_client
        self.sheet = None

    @backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=5,
        max_time=180,
        factor=5,
        giveup=lambda e: not _is_rate_limit_error(e),
        on_backoff=_on_backoff
    )
    def _open_sheet(self):
        return self.sheets_client.open_by_key(self.sheet_id)

    def _worksheet(self, name: str, width: int):
        try:
            return self.sheet.worksheet(name)
        except gspread.exceptions.WorksheetNotFound:
            logger.info("Creating worksheet %s", name)
            return self.sheet.add_worksheet(title=name, rows=1000, cols=max(width, 20))

    @backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=5,
        max_time=180,
        factor=5,
        giveup=lambda e: not _is_rate_limit_error(e),
        on_backoff=_on_backoff
    )
    def _write(self, worksheet, headers: List[str], rows: List[List[Any]]):
        worksheet.clear()
        worksheet.append_rows([headers] + rows, value_input_option='USER_ENTERED')

    def export(self, snapshot: LedgerSnapshot) -> Dict[str, int]:
        """Replace the report worksheets with the snapshot. Returns rows written per sheet."""
        if self.sheet is None:
            self.sheet = self._open_sheet()

        tables = [
            (self.LOTS_SHEET, Lot.sheet_headers(), [lot.to_sheet_row() for lot in snapshot.lots]),
            (self.DISPOSALS_SHEET, Disposal.sheet_headers(), [d.to_sheet_row() for d in snapshot.disposals]),
            (self.SWEEPS_SHEET, SweepTask.sheet_headers(), [t.to_sheet_row() for t in snapshot.sweep_tasks]),
        ]

        written = {}
        for name, headers, rows in tables:
            self._write(self._worksheet(name, len(headers)), headers, rows)
            written[name] = len(rows)
            logger.info("Exported %d rows to %s", len(rows), name)
        return written
