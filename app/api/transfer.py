"""Streaming a finished backup to the HTTP client.

`BackupDownloadResponse` owns the backup artifact from the moment the route
returns it: the file is deleted once the download completes, fails, or the
client goes away, whichever happens first.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, BinaryIO, Optional

from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from api.logging_config import get_logger
from backend.services.sql.artifacts import BackupArtifact, delete_artifact


logger = get_logger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class BackupDownloadResponse(Response):
    """Send a backup artifact as an attachment and delete it afterwards.

    Headers are sent lazily, right before the first chunk, so a failure to
    read the file up to that point still produces a JSON 500. A read failure
    after that ends the body early; the client sees a truncated download.
    """

    media_type = "application/gzip"

    def __init__(self, artifact: BackupArtifact, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> None:
        self.artifact = artifact
        self.chunk_size = chunk_size
        self.status_code = 200
        self.background = None
        self.init_headers(
            {
                "content-disposition": f'attachment; filename="{artifact.file_name}"',
                "cache-control": "no-cache",
                "pragma": "no-cache",
            }
        )
        self.headers_sent = False
        self.completed = False
        self.client_disconnected = False

    async def _send_error(self, scope: Scope, receive: Receive, send: Send, exc: BaseException) -> None:
        logger.error("Error reading backup file %s: %s", self.artifact.file_path, exc)
        if not self.headers_sent:
            response = JSONResponse(status_code=500, content={"error": "Error reading the backup file."})
            await response(scope, receive, send)
        else:
            # Headers are out: the only option left is to end the body early.
            await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _stream(self, scope: Scope, receive: Receive, send: Send, handle: BinaryIO) -> None:
        try:
            while True:
                try:
                    chunk = await run_in_threadpool(handle.read, self.chunk_size)
                except OSError as exc:
                    await self._send_error(scope, receive, send, exc)
                    return

                if not self.headers_sent:
                    await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
                    self.headers_sent = True

                await send({"type": "http.response.body", "body": chunk, "more_body": bool(chunk)})
                if not chunk:
                    self.completed = True
                    return
        except OSError:
            # Servers raise OSError from send() once the peer is gone.
            self.client_disconnected = True

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.client_disconnected = True
                return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        path = self.artifact.file_path
        handle: Optional[Any] = None
        tasks = []
        try:
            try:
                handle = open(path, "rb")
                size = os.fstat(handle.fileno()).st_size
            except OSError as exc:
                await self._send_error(scope, receive, send, exc)
                return

            self.raw_headers.append((b"content-length", str(size).encode("latin-1")))

            tasks = [
                asyncio.ensure_future(self._stream(scope, receive, send, handle)),
                asyncio.ensure_future(self._listen_for_disconnect(receive)),
            ]
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()

            if self.completed:
                logger.info("Backup %s sent to client (%s bytes)", self.artifact.file_name, size)
            elif self.client_disconnected:
                logger.info("Client disconnected before backup %s was fully sent", self.artifact.file_name)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if handle is not None:
                handle.close()
            delete_artifact(path)
