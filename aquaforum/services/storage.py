import asyncio
import logging
import random
import shutil
import time
from pathlib import Path
from typing import Optional, Sequence

from slugify import slugify

from aquaforum.services.media import MediaProvider
from aquaforum.services.results import DeleteOutcome, DeleteResult, UploadResult

log = logging.getLogger("aquaforum.media.local")

URL_PREFIX = "/uploads"


def unique_filename(original: str) -> str:
    ext = Path(original).suffix.lower()
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"


class LocalStorage(MediaProvider):
    name = "local"

    def __init__(self, root: str):
        self.base = Path(root).resolve()
        self.base.mkdir(parents=True, exist_ok=True)

    def _user_dir(self, user_id: Optional[str]) -> Path:
        folder = self.base / "images" / (slugify(user_id) if user_id else "common")
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def path_for_url(self, url: str) -> Optional[Path]:
        """Map '/uploads/images/<user>/<file>' back to a path under the root."""
        rel = url.split("?", 1)[0]
        if rel.startswith(URL_PREFIX + "/"):
            rel = rel[len(URL_PREFIX) + 1:]
        path = (self.base / rel.lstrip("/")).resolve()
        if path != self.base and self.base not in path.parents:
            return None
        return path

    async def upload(
        self,
        file_path: str,
        *,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> UploadResult:
        folder = self._user_dir(user_id)
        filename = unique_filename(file_path)
        target = folder / filename
        await asyncio.to_thread(shutil.copyfile, file_path, target)
        url = f"{URL_PREFIX}/{target.relative_to(self.base).as_posix()}"
        return UploadResult(
            url=url,
            thumbnail_url=url,
            original_url=url,
            provider=self.name,
            metadata={"filename": filename, "size": target.stat().st_size, "path": str(target)},
        )

    async def delete(self, url: str) -> DeleteResult:
        path = self.path_for_url(url)
        if path is None:
            return DeleteResult(DeleteOutcome.INVALID_URL, self.name, f"Invalid local URL: {url}")
        try:
            if path.is_file():
                await asyncio.to_thread(path.unlink)
                return DeleteResult(DeleteOutcome.DELETED, self.name)
        except OSError as exc:
            log.warning("Could not delete %s: %s", path, exc)
            return DeleteResult(DeleteOutcome.FAILED, self.name, str(exc))
        return DeleteResult(DeleteOutcome.NOT_FOUND, self.name, "File not found")
