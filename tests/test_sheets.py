import asyncio
import json
from dataclasses import replace
from typing import Dict, List
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from models.signup import SHEET_HEADERS, SignupRecord
from utils.sheets import OAUTH_TOKEN_URL, SHEETS_SCOPE, SheetsError, SheetsService, a1_range


class FakeSpreadsheet:
    """Just enough of the Sheets v4 and OAuth endpoints to drive SheetsService."""

    def __init__(self, sheet_id: str = "test-sheet-id"):
        self.sheet_id = sheet_id
        self.tabs: Dict[str, List[list]] = {"Sheet1": []}
        self.token_requests = 0
        self.assertions: List[str] = []
        self.rejected_tokens: set = set()
        self.fail_reads = False
        self.fail_appends = False
        self.calls: List[str] = []

    def _parse_range(self, rest: str):
        sep = rest.rindex("'!")
        return rest[1:sep].replace("''", "'"), rest[sep + 2:]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == OAUTH_TOKEN_URL:
            form = parse_qs(request.content.decode())
            self.assertions.append(form["assertion"][0])
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 3600})

        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        if token in self.rejected_tokens:
            return httpx.Response(401, json={"error": {"code": 401}})

        prefix = f"/v4/spreadsheets/{self.sheet_id}"
        path = request.url.path
        assert path.startswith(prefix)
        rest = path[len(prefix):]
        self.calls.append(f"{request.method} {rest}")

        if rest == "" and request.method == "GET":
            return httpx.Response(200, json={"sheets": [{"properties": {"title": t}} for t in self.tabs]})

        if rest == ":batchUpdate":
            body = json.loads(request.content)
            title = body["requests"][0]["addSheet"]["properties"]["title"]
            self.tabs[title] = []
            return httpx.Response(200, json={})

        assert rest.startswith("/values/")
        rest = rest[len("/values/"):]
        append = rest.endswith(":append")
        if append:
            rest = rest[: -len(":append")]
        tab, cells = self._parse_range(rest)
        rows = self.tabs[tab]

        if append:
            if self.fail_appends:
                return httpx.Response(500, text="backend error")
            assert request.url.params["valueInputOption"] == "RAW"
            assert request.url.params["insertDataOption"] == "INSERT_ROWS"
            rows.extend(json.loads(request.content)["values"])
            return httpx.Response(200, json={"updates": {"updatedRows": 1}})

        if request.method == "PUT":
            values = json.loads(request.content)["values"]
            if rows:
                rows[0] = values[0]
            else:
                rows.append(values[0])
            return httpx.Response(200, json={})

        if self.fail_reads:
            return httpx.Response(503, text="unavailable")
        if cells == "A1:G1":
            return httpx.Response(200, json={"values": rows[:1]} if rows else {})
        if cells == "A:A":
            values = [[r[0]] for r in rows if r]
            return httpx.Response(200, json={"values": values} if values else {})
        raise AssertionError(f"unexpected range {cells}")


@pytest.fixture
def spreadsheet():
    return FakeSpreadsheet()


@pytest.fixture
def service(settings, rsa_private_key_pem, spreadsheet):
    s = replace(settings, google_private_key=rsa_private_key_pem)
    return SheetsService(s, transport=httpx.MockTransport(spreadsheet.handler))


def _record(email: str, tab: str = "Sheet1") -> SignupRecord:
    return SignupRecord(email=email, timestamp="2024-05-01T12:00:00+00:00", sheet_tab=tab)


def test_a1_range_quotes_tab_names():
    assert a1_range("Sheet1", "A:A") == "'Sheet1'!A:A"
    assert a1_range("Beta Users", "A1:G1") == "'Beta Users'!A1:G1"
    assert a1_range("Bob's", "A:A") == "'Bob''s'!A:A"


@pytest.mark.asyncio
async def test_assertion_claims(service, spreadsheet, settings):
    await service.get_access_token()
    claims = jwt.decode(spreadsheet.assertions[0], options={"verify_signature": False})
    assert claims["iss"] == settings.google_credentials_email
    assert claims["scope"] == SHEETS_SCOPE
    assert claims["aud"] == OAUTH_TOKEN_URL
    assert claims["exp"] - claims["iat"] == 3600
    assert jwt.get_unverified_header(spreadsheet.assertions[0])["alg"] == "RS256"


@pytest.mark.asyncio
async def test_token_is_cached(service, spreadsheet):
    assert await service.get_access_token() == "tok-1"
    assert await service.get_access_token() == "tok-1"
    assert spreadsheet.token_requests == 1


@pytest.mark.asyncio
async def test_concurrent_token_requests_share_one_exchange(service, spreadsheet):
    tokens = await asyncio.gather(*(service.get_access_token() for _ in range(10)))
    assert set(tokens) == {"tok-1"}
    assert spreadsheet.token_requests == 1


@pytest.mark.asyncio
async def test_token_exchange_failure(settings, rsa_private_key_pem):
    s = replace(settings, google_private_key=rsa_private_key_pem)
    svc = SheetsService(s, transport=httpx.MockTransport(lambda r: httpx.Response(400, json={"error": "invalid_grant"})))
    with pytest.raises(SheetsError, match="Failed to get access token: 400"):
        await svc.get_access_token()


@pytest.mark.asyncio
async def test_append_writes_header_then_row(service, spreadsheet):
    await service.append_signup(_record("User@Example.com"))
    rows = spreadsheet.tabs["Sheet1"]
    assert rows[0] == SHEET_HEADERS
    assert rows[1][0] == "user@example.com"
    assert rows[1][6] == "Sheet1"


@pytest.mark.asyncio
async def test_append_creates_missing_tab(service, spreadsheet):
    await service.append_signup(_record("a@x.com", "Beta Users"))
    assert spreadsheet.tabs["Beta Users"][0] == SHEET_HEADERS
    assert spreadsheet.tabs["Beta Users"][1][0] == "a@x.com"


@pytest.mark.asyncio
async def test_existing_header_is_not_rewritten(service, spreadsheet):
    spreadsheet.tabs["Sheet1"] = [list(SHEET_HEADERS), ["old@x.com"]]
    await service.append_signup(_record("new@x.com"))
    assert not any(c.startswith("PUT") for c in spreadsheet.calls)
    assert [r[0] for r in spreadsheet.tabs["Sheet1"]] == ["Email", "old@x.com", "new@x.com"]


@pytest.mark.asyncio
async def test_append_failure_raises(service, spreadsheet):
    spreadsheet.fail_appends = True
    with pytest.raises(SheetsError, match="Failed to store signup data"):
        await service.append_signup(_record("a@x.com"))


@pytest.mark.asyncio
async def test_concurrent_appends_keep_every_row(service, spreadsheet):
    emails = [f"user{i}@example.com" for i in range(20)]
    await asyncio.gather(*(service.append_signup(_record(e, "Launch")) for e in emails))
    rows = spreadsheet.tabs["Launch"]
    assert rows[0] == SHEET_HEADERS
    assert sorted(r[0] for r in rows[1:]) == sorted(emails)
    assert sum(1 for c in spreadsheet.calls if c == "POST :batchUpdate") == 1


@pytest.mark.asyncio
async def test_email_exists_is_case_insensitive(service, spreadsheet):
    spreadsheet.tabs["Sheet1"] = [list(SHEET_HEADERS), ["test@example.com"]]
    assert await service.email_exists("TEST@Example.com", "Sheet1") is True
    assert await service.email_exists("other@example.com", "Sheet1") is False


@pytest.mark.asyncio
async def test_email_exists_across_all_tabs(service, spreadsheet):
    spreadsheet.tabs["Beta"] = [list(SHEET_HEADERS), ["beta@x.com"]]
    assert await service.email_exists("beta@x.com") is True
    assert await service.email_exists("beta@x.com", "Sheet1") is False


@pytest.mark.asyncio
async def test_email_exists_fails_open(service, spreadsheet):
    spreadsheet.tabs["Sheet1"] = [list(SHEET_HEADERS), ["test@example.com"]]
    spreadsheet.fail_reads = True
    assert await service.email_exists("test@example.com", "Sheet1") is False


@pytest.mark.asyncio
async def test_stats_skip_header(service, spreadsheet):
    spreadsheet.tabs["Sheet1"] = [list(SHEET_HEADERS), ["a@x.com"], ["b@x.com"]]
    spreadsheet.tabs["Beta"] = [list(SHEET_HEADERS), ["c@x.com"]]
    assert await service.get_signup_stats() == {"totalSignups": 3, "sheetTabs": ["Sheet1", "Beta"]}
    assert await service.get_signup_stats("Beta") == {"totalSignups": 1, "sheetTabs": ["Beta"]}


@pytest.mark.asyncio
async def test_stats_on_empty_tab(service, spreadsheet):
    assert await service.get_signup_stats("Sheet1") == {"totalSignups": 0, "sheetTabs": ["Sheet1"]}


@pytest.mark.asyncio
async def test_stats_read_failure_raises(service, spreadsheet):
    spreadsheet.fail_reads = True
    with pytest.raises(SheetsError):
        await service.get_signup_stats("Sheet1")


@pytest.mark.asyncio
async def test_list_tabs_falls_back_to_default(settings, rsa_private_key_pem):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == OAUTH_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        return httpx.Response(500)

    s = replace(settings, google_private_key=rsa_private_key_pem, default_sheet_tab="Main")
    svc = SheetsService(s, transport=httpx.MockTransport(handler))
    assert await svc.list_sheet_tabs() == ["Main"]


@pytest.mark.asyncio
async def test_rejected_token_is_refreshed_once(service, spreadsheet):
    spreadsheet.tabs["Sheet1"] = [list(SHEET_HEADERS), ["a@x.com"]]
    await service.get_access_token()
    spreadsheet.rejected_tokens.add("tok-1")

    assert await service.email_exists("a@x.com", "Sheet1") is True
    assert spreadsheet.token_requests == 2
    assert await service.get_access_token() == "tok-2"
