"""Random access to datastore files over HTTPS."""

from __future__ import annotations

from typing import Optional

import requests

from vmware2xcp.utils.logging import get_logger

logger = get_logger(__name__)


class DatastoreFile:
    """A file on an ESXi datastore, read with HTTP range requests.

    ESXi serves datastore content at ``/folder/<path>?dcPath=..&dsName=..``
    and honors ``Range`` headers, which is enough to treat a flat or sparse
    extent as a random-access source without downloading it. The session is
    the host's, already carrying the API cookie; it is not closed here.
    """

    def __init__(self, url: str, params: dict[str, str], session: requests.Session):
        self.url = url
        self.params = params
        self.session = session
        self._size: Optional[int] = None

    def __repr__(self) -> str:
        return f"DatastoreFile([{self.params.get('dsName')}] {self.url.split('/folder/', 1)[-1]})"

    def size(self) -> int:
        if self._size is None:
            resp = self.session.head(self.url, params=self.params)
            resp.raise_for_status()
            self._size = int(resp.headers["Content-Length"])
        return self._size

    def read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes at ``offset``. Short reads mean end of file."""
        if length <= 0:
            return b""
        headers = {"Range": f"bytes={offset}-{offset + length - 1}"}
        resp = self.session.get(self.url, params=self.params, headers=headers)
        if resp.status_code == 416:
            return b""
        if not resp.ok:
            logger.error(f"Datastore read failed {resp.status_code} on {self!r} @{offset}+{length}")
            resp.raise_for_status()
        if resp.status_code == 200:
            # server ignored the range
            return resp.content[offset:offset + length]
        return resp.content

    def read_all(self) -> bytes:
        resp = self.session.get(self.url, params=self.params)
        resp.raise_for_status()
        return resp.content
