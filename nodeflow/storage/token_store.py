"""
Token Store - File persistence for suspension tokens.

Waiting runs outlive the process that started them. The store writes each
token as one JSON file with atomic writes and keeps an index for listing.
Claiming a token renames it out of the way before reading, so two resumers
racing for the same token cannot both get it.

Directory structure:
    tokens/
        index.json                  # Token manifest
        tok_{timestamp}_{id}.json   # Individual tokens
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path

from nodeflow.errors import SuspensionTokenError
from nodeflow.schemas.suspension import SuspensionToken, TokenIndex, TokenSummary
from nodeflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileTokenStore:
    """Stores suspension tokens in a directory with an index."""

    def __init__(self, base_path: Path | str):
        self.tokens_dir = Path(base_path)
        self.index_path = self.tokens_dir / "index.json"
        self._index_lock = asyncio.Lock()

    def _token_path(self, token_id: str) -> Path:
        if not token_id or "/" in token_id or "\\" in token_id or token_id.startswith("."):
            raise SuspensionTokenError(f"Invalid token id: {token_id!r}")
        return self.tokens_dir / f"{token_id}.json"

    async def save(self, token: SuspensionToken) -> None:
        """
        Atomically save a token and add it to the index.

        Raises:
            OSError: If file write fails
        """
        token_path = self._token_path(token.token_id)

        def _write():
            self.tokens_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(token_path) as f:
                f.write(token.model_dump_json(indent=2))
            logger.debug(f"Saved token {token.token_id}")

        await asyncio.to_thread(_write)

        async with self._index_lock:
            index = await self.load_index() or TokenIndex()
            index.add_token(token)
            await self._write_index(index)

    async def load(self, token_id: str) -> SuspensionToken | None:
        """Load a token without consuming it; None if not found or unreadable."""
        token_path = self._token_path(token_id)

        def _read() -> SuspensionToken | None:
            if not token_path.exists():
                return None
            try:
                return SuspensionToken.model_validate_json(token_path.read_text())
            except Exception as e:
                logger.error(f"Failed to load token {token_id}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def claim(self, token_id: str) -> SuspensionToken:
        """
        Load and remove a token in one step.

        Raises:
            SuspensionTokenError: if the token does not exist, was already
                claimed, or cannot be parsed
        """
        token_path = self._token_path(token_id)
        claimed_path = token_path.with_name(f".{token_path.name}.claimed")

        def _claim() -> SuspensionToken:
            try:
                os.rename(token_path, claimed_path)
            except FileNotFoundError as e:
                raise SuspensionTokenError(
                    f"Token '{token_id}' not found or already claimed"
                ) from e
            try:
                return SuspensionToken.model_validate_json(claimed_path.read_text())
            except ValueError as e:
                raise SuspensionTokenError(f"Token '{token_id}' is unreadable: {e}") from e
            finally:
                claimed_path.unlink(missing_ok=True)

        token = await asyncio.to_thread(_claim)

        async with self._index_lock:
            await self._remove_from_index(token_id)

        logger.info(f"🎟 Claimed token {token_id} (run {token.run_id})")
        return token

    async def load_index(self) -> TokenIndex | None:
        def _read() -> TokenIndex | None:
            if not self.index_path.exists():
                return None
            try:
                return TokenIndex.model_validate_json(self.index_path.read_text())
            except Exception as e:
                logger.error(f"Failed to load token index: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def list_tokens(
        self,
        workflow_id: str | None = None,
        run_id: str | None = None,
    ) -> list[TokenSummary]:
        """List stored tokens with optional filters."""
        index = await self.load_index()
        if not index:
            return []

        tokens = index.tokens
        if workflow_id:
            tokens = [t for t in tokens if t.workflow_id == workflow_id]
        if run_id:
            tokens = [t for t in tokens if t.run_id == run_id]
        return tokens

    async def delete(self, token_id: str) -> bool:
        """Delete a token. Returns False if it did not exist."""
        token_path = self._token_path(token_id)

        def _delete() -> bool:
            if not token_path.exists():
                logger.warning(f"Token file not found: {token_path}")
                return False
            token_path.unlink()
            logger.info(f"Deleted token {token_id}")
            return True

        deleted = await asyncio.to_thread(_delete)
        if deleted:
            async with self._index_lock:
                await self._remove_from_index(token_id)
        return deleted

    async def prune(self, max_age_days: int = 7) -> int:
        """Delete tokens older than max_age_days. Returns the number deleted."""
        index = await self.load_index()
        if not index or not index.tokens:
            return 0

        cutoff = datetime.now() - timedelta(days=max_age_days)
        old_tokens = []
        for summary in index.tokens:
            try:
                if datetime.fromisoformat(summary.created_at) < cutoff:
                    old_tokens.append(summary.token_id)
            except ValueError as e:
                logger.warning(f"Failed to parse timestamp for {summary.token_id}: {e}")

        deleted_count = 0
        for token_id in old_tokens:
            if await self.delete(token_id):
                deleted_count += 1

        if deleted_count > 0:
            logger.info(f"Pruned {deleted_count} tokens older than {max_age_days} days")
        return deleted_count

    async def exists(self, token_id: str) -> bool:
        token_path = self._token_path(token_id)
        return await asyncio.to_thread(token_path.exists)

    async def _write_index(self, index: TokenIndex) -> None:
        """Should be called with _index_lock held."""

        def _write():
            self.tokens_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(self.index_path) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)

    async def _remove_from_index(self, token_id: str) -> None:
        """Should be called with _index_lock held."""
        index = await self.load_index()
        if not index:
            return
        if index.remove_token(token_id):
            await self._write_index(index)
            logger.debug(f"Removed token {token_id} from index")
