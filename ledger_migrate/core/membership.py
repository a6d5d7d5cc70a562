"""Membership data sources and account loading."""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import httpx
import structlog
import yaml
from pydantic import ValidationError

from ..constants import DEFAULT_MEMBERS_PAGE_SIZE
from ..models import Account, MemberRecord
from ..utils import normalize_address
from .exceptions import DataConsistencyError, MembershipSourceError
from .settings import RPC_TIMEOUT

logger = structlog.get_logger()


def parse_member_records(rows: Iterable[Any]) -> list[MemberRecord]:
    """Validate raw membership rows.

    Raises:
        DataConsistencyError: If any row is malformed
    """
    records = []
    for index, row in enumerate(rows):
        try:
            records.append(MemberRecord.model_validate(row))
        except ValidationError as e:
            raise DataConsistencyError(
                "Malformed membership record", index=index, record=row, error=str(e)
            ) from e
    return records


def load_accounts(
    records: Iterable[MemberRecord], whitelist: Iterable[str] | None = None
) -> list[Account]:
    """Turn membership records into accounts ready for the work queue.

    Only active members are kept. With a whitelist, only listed addresses are
    kept. Accounts are returned largest earnings first.

    Raises:
        DataConsistencyError: If the same address appears twice
    """
    allowed = {normalize_address(a) for a in whitelist} if whitelist else None
    seen: set[str] = set()
    selected: list[MemberRecord] = []
    for record in records:
        if record.address in seen:
            raise DataConsistencyError("Duplicate member in membership data", address=record.address)
        seen.add(record.address)
        if not record.active:
            continue
        if allowed is not None and record.address not in allowed:
            continue
        selected.append(record)

    selected.sort(key=lambda r: r.earnings, reverse=True)
    return [Account.from_member(record, sequence=i) for i, record in enumerate(selected)]


class MembershipSource(ABC):
    """Read access to the members of a ledger."""

    @abstractmethod
    async def list_members(self, ledger_id: str) -> list[MemberRecord]:
        """All member records of ``ledger_id``, active and inactive."""

    async def aclose(self) -> None:
        """Release resources held by the source."""


class HttpMembershipSource(MembershipSource):
    """Pages through the operator API's member listing."""

    def __init__(
        self,
        base_url: str,
        page_size: int = DEFAULT_MEMBERS_PAGE_SIZE,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=RPC_TIMEOUT)
        self.logger = logger.bind(component="membership_source")

    async def list_members(self, ledger_id: str) -> list[MemberRecord]:
        rows: list[Any] = []
        offset = 0
        while True:
            page = await self._fetch_page(ledger_id, offset)
            rows.extend(page)
            if len(page) < self.page_size:
                break
            offset += len(page)

        self.logger.info("Fetched membership listing", ledger=ledger_id, members=len(rows))
        return parse_member_records(rows)

    async def _fetch_page(self, ledger_id: str, offset: int) -> list[Any]:
        path = f"/dataunions/{normalize_address(ledger_id)}/members"
        params = {"offset": offset, "limit": self.page_size}
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.get(path, params=params)
                response.raise_for_status()
                page = response.json()
            except (httpx.TransportError, httpx.HTTPStatusError, ValueError) as e:
                last_error = e
                self.logger.warning(
                    "Membership page request failed",
                    offset=offset,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            if not isinstance(page, list):
                raise MembershipSourceError(
                    f"Expected a list of members from {path}, got {type(page).__name__}"
                )
            return page

        raise MembershipSourceError(
            f"Failed to fetch members of {ledger_id} at offset {offset}: {last_error}"
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class FileMembershipSource(MembershipSource):
    """Reads a membership snapshot exported to a JSON or YAML file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def list_members(self, ledger_id: str) -> list[MemberRecord]:
        try:
            content = await asyncio.to_thread(self.path.read_text)
        except OSError as e:
            raise MembershipSourceError(f"Failed to read members file {self.path}: {e}") from e

        try:
            if self.path.suffix.lower() == ".json":
                rows = json.loads(content)
            else:
                rows = yaml.safe_load(content)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise MembershipSourceError(f"Failed to parse members file {self.path}: {e}") from e

        # Either a bare list or {ledger_id: [...]} / {"members": [...]}
        if isinstance(rows, dict):
            rows = rows.get(ledger_id) or rows.get(normalize_address(ledger_id)) or rows.get("members")
        if not isinstance(rows, list):
            raise MembershipSourceError(f"No member list for {ledger_id} in {self.path}")
        return parse_member_records(rows)
