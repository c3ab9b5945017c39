from __future__ import annotations

import gzip
import logging
from io import BytesIO

from flask import Flask, request


COMPRESSIBLE_TYPES = ("application/json", "text/csv")


def init_compression(app: Flask, *, enabled: bool = True, min_size: int = 500, level: int = 6) -> None:
    """
    Gzip JSON API responses and CSV exports.

    PDFs and uploaded documents are left alone; they are either already
    compressed or streamed from disk.
    """
    if not enabled:
        return
    level = max(1, min(9, int(level)))

    @app.after_request
    def _compress(response):
        if "gzip" not in request.headers.get("Accept-Encoding", "").lower():
            return response
        if (
            response.status_code < 200
            or response.status_code >= 300
            or response.direct_passthrough
            or "Content-Encoding" in response.headers
        ):
            return response

        content_type = response.headers.get("Content-Type", "").lower()
        if not content_type.startswith(COMPRESSIBLE_TYPES):
            return response

        data = response.get_data()
        if len(data) < min_size:
            return response

        try:
            buf = BytesIO()
            with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=level) as gz:
                gz.write(data)
            compressed = buf.getvalue()
        except OSError:
            logging.getLogger("api").exception("gzip failed path=%s", request.path)
            return response

        if len(compressed) < len(data):
            response.set_data(compressed)
            response.headers["Content-Encoding"] = "gzip"
            response.headers["Content-Length"] = len(compressed)
            response.headers["Vary"] = "Accept-Encoding"
        return response
