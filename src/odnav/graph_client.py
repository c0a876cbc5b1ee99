#!/usr/bin/env python3
"""Microsoft Graph transport for OneDrive folder operations."""

import logging
import os
from pathlib import Path
from typing import Optional, List, Dict, Any
from urllib.parse import quote, urlparse

import requests
import certifi

from .errors import (
    AuthRequired, InsufficientScope, NetworkError, RemoteError, SecurityError,
)
from .logging_config import sanitize_for_log


logger = logging.getLogger(__name__)


# Statuses worth a later retry by the caller (never retried here)
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}

# Graph recommends an upload session for anything larger than 4 MB
SIMPLE_UPLOAD_MAX_SIZE = 4 * 1024 * 1024
# Upload session chunks must be a multiple of 320 KiB
UPLOAD_CHUNK_SIZE = 320 * 1024 * 12


class GraphClient:
    """Thin client for the OneDrive endpoints of Microsoft Graph.

    Every call takes the bearer token explicitly; token lifecycle belongs to
    TokenBroker. HTTP failures are classified into the ODNAV error taxonomy
    exactly once, here.
    """

    API_BASE = "https://graph.microsoft.com/v1.0"
    TIMEOUT = 30
    LISTING_SELECT = "id,name,folder,file,size,webUrl,lastModifiedDateTime,parentReference"

    def __init__(self, session: Optional[requests.Session] = None, timeout: int = TIMEOUT):
        """Initialize Graph client.

        Args:
            session: requests session to use (optional)
            timeout: Per-request timeout in seconds
        """
        self._session = session or requests.Session()
        self._session.verify = certifi.where()  # Explicit certificate validation
        self.timeout = timeout

    def _classify(self, response: requests.Response) -> None:
        """Raise the matching SessionError for a failed response."""
        if response.ok:
            return

        code = None
        message = response.reason or ''
        try:
            error = response.json().get('error', {})
            if isinstance(error, dict):
                code = error.get('code')
                message = error.get('message') or message
        except ValueError:
            pass

        status = response.status_code
        text = sanitize_for_log(f"{status} {code or ''} {message}".strip())
        logger.debug(f"Graph request failed: {text}")

        if status == 401:
            raise AuthRequired(f"Access token rejected: {message}", detail=code)
        if status == 403:
            raise InsufficientScope(f"Access denied: {message}", detail=code)
        if status in TRANSIENT_STATUSES:
            raise NetworkError(f"Remote store unavailable ({status}): {message}", status_code=status)
        raise RemoteError(f"Remote store error ({status}): {message}", status_code=status, code=code)

    def _request(self, method: str, url: str, access_token: str, **kwargs) -> requests.Response:
        """Make authenticated request to a Graph URL or endpoint."""
        if not url.startswith('http'):
            url = f"{self.API_BASE}{url}"

        headers = kwargs.pop('headers', {})
        headers['Authorization'] = f"Bearer {access_token}"
        kwargs.setdefault('timeout', self.timeout)

        try:
            response = self._session.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {urlparse(url).path} failed: {sanitize_for_log(str(e))}")
            raise NetworkError(f"Network failure: {e}")

        self._classify(response)
        return response

    def _validate_next_link(self, url: str) -> None:
        """Reject pagination links that do not point back at Graph (SSRF protection).

        Raises:
            SecurityError: If URL is not from the trusted Microsoft domain
        """
        parsed = urlparse(url)
        if not (parsed.scheme == 'https' and
                parsed.hostname == 'graph.microsoft.com' and
                parsed.path.startswith('/v1.0/')):
            raise SecurityError(
                f"Untrusted pagination URL: {url} "
                f"(scheme={parsed.scheme}, host={parsed.hostname}, path={parsed.path})"
            )

    @staticmethod
    def children_endpoint(folder_id: Optional[str] = None) -> str:
        if folder_id:
            return f"/me/drive/items/{quote(folder_id, safe='')}/children"
        return "/me/drive/root/children"

    def list_children(self, access_token: str, folder_id: Optional[str] = None,
                      paginate: bool = True) -> List[Dict[str, Any]]:
        """List items in a folder with pagination support.

        Args:
            access_token: Bearer token
            folder_id: Folder item ID (None for the drive root)
            paginate: Whether to follow pagination links

        Returns:
            List of driveItem dictionaries
        """
        all_items = []
        url = self.children_endpoint(folder_id)
        params = {'$select': self.LISTING_SELECT}

        while True:
            response = self._request('GET', url, access_token, params=params)
            data = response.json()
            all_items.extend(data.get('value', []))

            next_link = data.get('@odata.nextLink')
            if not paginate or not next_link:
                break

            self._validate_next_link(next_link)
            url = next_link
            params = None  # nextLink already carries the query
            logger.debug(f"Following pagination link, fetched {len(all_items)} items so far")

        logger.info(f"Listed {len(all_items)} items from {folder_id or 'root'}")
        return all_items

    def create_folder(self, access_token: str, name: str, parent_id: Optional[str] = None,
                      conflict_behavior: str = 'rename') -> Dict[str, Any]:
        """Create a folder; name conflicts are resolved by the remote store.

        Returns:
            Folder metadata of the created item (its name may differ on conflict)
        """
        data = {
            "name": name,
            "folder": {},
            "@microsoft.graph.conflictBehavior": conflict_behavior,
        }
        response = self._request('POST', self.children_endpoint(parent_id), access_token, json=data)
        metadata = response.json()
        logger.info(f"Created folder: {metadata.get('name', name)}")
        return metadata

    def rename_item(self, access_token: str, item_id: str, name: str) -> Dict[str, Any]:
        """Rename a drive item."""
        endpoint = f"/me/drive/items/{quote(item_id, safe='')}"
        response = self._request('PATCH', endpoint, access_token, json={"name": name})
        logger.info(f"Renamed item {item_id} -> {name}")
        return response.json()

    def delete_item(self, access_token: str, item_id: str) -> None:
        """Delete a drive item. A missing item counts as deleted."""
        endpoint = f"/me/drive/items/{quote(item_id, safe='')}"
        try:
            self._request('DELETE', endpoint, access_token)
        except RemoteError as e:
            if e.status_code != 404:
                raise
            logger.debug(f"Item already gone: {item_id}")
            return
        logger.info(f"Deleted item: {item_id}")

    def upload_file(self, access_token: str, local_path: Path, remote_path: str) -> Dict[str, Any]:
        """Upload a local file to a path relative to the drive root.

        Args:
            access_token: Bearer token
            local_path: Local file path
            remote_path: Remote destination path (e.g. "Documents/report.csv")

        Returns:
            Upload response metadata
        """
        remote_path = remote_path.strip('/')
        if not remote_path or '..' in Path(remote_path).parts:
            raise SecurityError(f"Invalid remote path: {remote_path!r}")
        encoded = quote(remote_path)

        size = os.path.getsize(local_path)
        if size <= SIMPLE_UPLOAD_MAX_SIZE:
            with open(local_path, 'rb') as f:
                headers = {'Content-Type': 'application/octet-stream'}
                response = self._request('PUT', f"/me/drive/root:/{encoded}:/content",
                                         access_token, data=f, headers=headers)
            metadata = response.json()
        else:
            metadata = self._upload_large_file(access_token, local_path, encoded, size)

        logger.info(f"Uploaded: {local_path} -> {remote_path}")
        return metadata

    def _upload_large_file(self, access_token: str, local_path: Path,
                           encoded_path: str, size: int) -> Dict[str, Any]:
        """Upload through a resumable upload session."""
        session = self._request(
            'POST', f"/me/drive/root:/{encoded_path}:/createUploadSession", access_token,
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        ).json()
        upload_url = session['uploadUrl']

        response = None
        with open(local_path, 'rb') as f:
            offset = 0
            while offset < size:
                chunk = f.read(UPLOAD_CHUNK_SIZE)
                end = offset + len(chunk) - 1
                headers = {
                    'Content-Length': str(len(chunk)),
                    'Content-Range': f"bytes {offset}-{end}/{size}",
                }
                # The upload URL is pre-authenticated; it must not receive the bearer token
                try:
                    response = self._session.put(upload_url, data=chunk, headers=headers,
                                                 timeout=self.timeout)
                except requests.exceptions.RequestException as e:
                    raise NetworkError(f"Network failure during upload: {e}")
                self._classify(response)
                offset = end + 1
                logger.debug(f"Uploaded {offset}/{size} bytes of {local_path}")

        return response.json() if response is not None else {}
