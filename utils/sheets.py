"""
Google Sheets storage for signups, via the Sheets REST API v4.

Authenticates as a service account: a signed JWT is exchanged for an access
token which is cached until shortly before it expires.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import jwt

from core.config import Settings, get_settings, logger
from models.signup import SHEET_HEADERS, SignupRecord
from utils.metrics import record_sheets_request

SHEETS_BASE_URL = "https://sheets.googleapis.com/v4"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
TOKEN_LIFETIME_SEC = 3600
TOKEN_EXPIRY_BUFFER_SEC = 300


class SheetsError(RuntimeError):
    pass


def a1_range(tab: str, cells: str) -> str:
    """Build an A1 range with the tab name quoted, e.g. 'My Tab'!A:A"""
    return "'" + tab.replace("'", "''") + "'!" + cells


class SheetsService:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        self._tab_lock = asyncio.Lock()

    # ---- auth ----

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=30.0, transport=self._transport)

    def _sign_assertion(self) -> str:
        now = int(time.time())
        claims = {
            "iss": self.settings.google_credentials_email,
            "scope": SHEETS_SCOPE,
            "aud": OAUTH_TOKEN_URL,
            "iat": now,
            "exp": now + TOKEN_LIFETIME_SEC,
        }
        return jwt.encode(claims, self.settings.google_private_key, algorithm="RS256", headers={"typ": "JWT"})

    def _token_valid(self) -> bool:
        return bool(self._token) and self._token_expires_at > time.time() + TOKEN_EXPIRY_BUFFER_SEC

    async def get_access_token(self) -> str:
        if self._token_valid():
            return self._token  # type: ignore[return-value]
        # Concurrent first callers wait here and reuse the winner's token
        async with self._token_lock:
            if self._token_valid():
                return self._token  # type: ignore[return-value]
            logger.info("[sheets] Obtaining new access token")
            assertion = self._sign_assertion()
            async with self._client() as client:
                resp = await client.post(
                    OAUTH_TOKEN_URL,
                    data={
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": assertion,
                    },
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            if resp.status_code != 200:
                logger.error(f"[sheets] Token exchange failed: {resp.status_code} {resp.text}")
                raise SheetsError(f"Failed to get access token: {resp.status_code} {resp.reason_phrase}")
            tokens = resp.json()
            access_token = tokens.get("access_token")
            if not access_token:
                raise SheetsError("Token response did not include an access token")
            self._token = access_token
            self._token_expires_at = time.time() + int(tokens.get("expires_in", TOKEN_LIFETIME_SEC))
            logger.info("[sheets] Access token obtained and cached")
            return access_token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{SHEETS_BASE_URL}{path}"
        started = time.perf_counter()
        success = False
        try:
            token = await self.get_access_token()
            async with self._client() as client:
                resp = await client.request(
                    method, url, params=params, json=json, headers={"Authorization": f"Bearer {token}"}
                )
                if resp.status_code == 401:
                    # Token revoked or expired early: refresh once and re-issue
                    logger.info("[sheets] Token rejected, refreshing")
                    self.invalidate_token()
                    token = await self.get_access_token()
                    resp = await client.request(
                        method, url, params=params, json=json, headers={"Authorization": f"Bearer {token}"}
                    )
            if resp.status_code < 200 or resp.status_code >= 300:
                logger.error(f"[sheets] {operation} failed: {resp.status_code} {resp.text}")
                raise SheetsError(f"Sheets API request failed: {resp.status_code} {resp.reason_phrase}")
            success = True
            return resp.json() if resp.content else {}
        finally:
            record_sheets_request(operation, success, time.perf_counter() - started)

    def _spreadsheet_path(self, suffix: str = "") -> str:
        return f"/spreadsheets/{self.settings.google_sheet_id}{suffix}"

    def _values_path(self, range_: str, suffix: str = "") -> str:
        return self._spreadsheet_path(f"/values/{quote(range_, safe='')}{suffix}")

    # ---- tabs ----

    async def _fetch_tab_titles(self) -> List[str]:
        data = await self._request("GET", self._spreadsheet_path(), "getSpreadsheet")
        titles = []
        for sheet in data.get("sheets") or []:
            title = (sheet.get("properties") or {}).get("title")
            if title:
                titles.append(title)
        return titles

    async def list_sheet_tabs(self) -> List[str]:
        try:
            return await self._fetch_tab_titles()
        except Exception as ex:
            logger.error(f"[sheets] Failed to list sheet tabs: {ex}")
            return [self.settings.default_sheet_tab]

    async def initialize_sheet_tab(self, sheet_tab: str) -> None:
        """Create the tab if it is missing and write the header row if it is empty."""
        async with self._tab_lock:
            try:
                if sheet_tab not in await self._fetch_tab_titles():
                    logger.info(f"[sheets] Creating sheet tab '{sheet_tab}'")
                    await self._request(
                        "POST",
                        self._spreadsheet_path(":batchUpdate"),
                        "addSheet",
                        json={"requests": [{"addSheet": {"properties": {"title": sheet_tab}}}]},
                    )

                header_range = a1_range(sheet_tab, "A1:G1")
                current = await self._request("GET", self._values_path(header_range), "readHeader")
                if not current.get("values"):
                    logger.info(f"[sheets] Writing headers to sheet tab '{sheet_tab}'")
                    await self._request(
                        "PUT",
                        self._values_path(header_range),
                        "writeHeader",
                        params={"valueInputOption": "RAW"},
                        json={"values": [SHEET_HEADERS]},
                    )
            except Exception as ex:
                logger.error(f"[sheets] Failed to initialize sheet tab '{sheet_tab}': {ex}")
                raise

    async def _read_emails(self, sheet_tab: str) -> List[List[Any]]:
        data = await self._request("GET", self._values_path(a1_range(sheet_tab, "A:A")), "readColumn")
        return data.get("values") or []

    # ---- operations ----

    async def append_signup(self, record: SignupRecord) -> None:
        try:
            await self.initialize_sheet_tab(record.sheet_tab)
            await self._request(
                "POST",
                self._values_path(a1_range(record.sheet_tab, "A:A"), ":append"),
                "appendSignup",
                params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                json={"values": [record.to_row()]},
            )
            logger.info(f"[sheets] Appended {record.email.lower()} to '{record.sheet_tab}'")
        except Exception as ex:
            logger.error(f"[sheets] Failed to append {record.email}: {ex}")
            raise SheetsError("Failed to store signup data") from ex

    async def email_exists(self, email: str, sheet_tab: Optional[str] = None) -> bool:
        """
        Case-insensitive scan of column A in one tab, or in every tab when
        sheet_tab is None. Read failures return False so signups keep flowing.
        """
        target = email.strip().lower()
        try:
            tabs = [sheet_tab] if sheet_tab else await self.list_sheet_tabs()
            for tab in tabs:
                for row in await self._read_emails(tab):
                    if row and str(row[0]).strip().lower() == target:
                        logger.info(f"[sheets] {target} already exists in '{tab}'")
                        return True
            return False
        except Exception as ex:
            logger.error(f"[sheets] Duplicate check failed for {target}, allowing signup: {ex}")
            return False

    async def get_signup_stats(self, sheet_tab: Optional[str] = None) -> Dict[str, Any]:
        tabs = [sheet_tab] if sheet_tab else await self.list_sheet_tabs()
        total = 0
        for tab in tabs:
            rows = await self._read_emails(tab)
            if rows and rows[0] and str(rows[0][0]) == SHEET_HEADERS[0]:
                rows = rows[1:]
            total += sum(1 for row in rows if row and row[0])
        return {"totalSignups": total, "sheetTabs": tabs}


_service: Optional[SheetsService] = None


def get_sheets_service(settings: Optional[Settings] = None) -> SheetsService:
    """Process-wide SheetsService, created on first use."""
    global _service
    if _service is None:
        _service = SheetsService(settings or get_settings())
    return _service


def reset_sheets_service() -> None:
    global _service
    _service = None
