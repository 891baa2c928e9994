"""Fetch-and-store of server jars."""
from pathlib import Path

import requests

from mchost.core.errors import DownloadFailure

DOWNLOAD_CHUNK_BYTES = 64 * 1024


def server_jar_url(url_template, version):
    return str(url_template).format(version=str(version).strip())


def download_file(url, dest, timeout=60, session=None):
    """Stream ``url`` into ``dest`` through a temp file; raise ``DownloadFailure`` on any error."""
    dest = Path(dest)
    temp = dest.with_name(dest.name + ".part")
    http = session or requests
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with http.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
            response.raise_for_status()
            written = 0
            with open(temp, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        if written == 0:
            raise DownloadFailure("Downloaded server jar is empty.")
        temp.replace(dest)
    except requests.exceptions.RequestException as exc:
        temp.unlink(missing_ok=True)
        raise DownloadFailure(f"Failed to download server files: {exc}") from exc
    except OSError as exc:
        temp.unlink(missing_ok=True)
        raise DownloadFailure(f"Failed to store server files: {exc}") from exc
    except DownloadFailure:
        temp.unlink(missing_ok=True)
        raise
    return dest
