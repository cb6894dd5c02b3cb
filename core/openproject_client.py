from __future__ import annotations

from dataclasses import dataclass
from typing import Union
from urllib.parse import urlencode, urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


def build_session() -> requests.Session:
    session = requests.Session()
    # Failed requests are retried by the next scheduled tick, not by the adapter.
    retries = Retry(total=0, connect=0, read=0, redirect=3, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retries, pool_connections=10, pool_maxsize=10)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"Accept": "application/hal+json"})
    return session


@dataclass(frozen=True)
class TransportPolicy:
    """TLS settings for a single request.

    ``verify`` is passed straight to requests: True validates against the
    system trust store, a path validates against that CA bundle.
    """

    verify: Union[bool, str] = True

    @classmethod
    def for_ca_bundle(cls, ca_bundle: str | None) -> "TransportPolicy":
        return cls(verify=ca_bundle) if ca_bundle else cls()


class OpenProjectClient:
    def __init__(self, session: requests.Session, api_base_url: str, oauth_base_url: str, timeout: tuple[float, float]):
        self.session = session
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_base_url = oauth_base_url.rstrip("/")
        self.timeout = timeout

    def resolve_link(self, href: str) -> str:
        """Turn a HAL href into an absolute URL.

        Server-relative hrefs already carry the ``/api/v3`` prefix, so they are
        joined against the host rather than appended to the API base.
        """
        if href.lower().startswith(("http://", "https://")):
            return href
        return urljoin(f"{self.api_base_url}/", href)

    def authorization_url(self, client_id: str, redirect_uri: str, scope: str, state: str) -> str:
        params = urlencode(
            {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "scope": scope,
                "state": state,
            }
        )
        return f"{self.oauth_base_url}/authorize?{params}"

    def refresh_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        transport: TransportPolicy | None = None,
    ) -> requests.Response:
        policy = transport or TransportPolicy()
        return self.session.post(
            f"{self.oauth_base_url}/token",
            data={
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            timeout=self.timeout,
            verify=policy.verify,
        )

    def exchange_code(
        self,
        client_id: str,
        client_secret: str,
        code: str,
        redirect_uri: str,
        transport: TransportPolicy | None = None,
    ) -> requests.Response:
        policy = transport or TransportPolicy()
        return self.session.post(
            f"{self.oauth_base_url}/token",
            data={
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            timeout=self.timeout,
            verify=policy.verify,
        )

    def get_notifications(self, access_token: str) -> requests.Response:
        return self.session.get(
            f"{self.api_base_url}/notifications",
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout,
        )

    def mark_read(self, access_token: str, read_href: str) -> requests.Response:
        return self.session.post(
            self.resolve_link(read_href),
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            timeout=self.timeout,
        )
