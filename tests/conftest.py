"""Shared fixtures: fake Microsoft endpoints, fake IMAP server and in-memory services."""

import imaplib
from email.message import EmailMessage
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, unquote

import httpx
import pytest

from outlook_manager.accounts import InMemoryAccountStore
from outlook_manager.bootstrap import build_services
from outlook_manager.cache import InMemoryMailCacheStore, MailCache
from outlook_manager.imap import ImapProtocolClient
from outlook_manager.models import Account
from outlook_manager.proxies import InMemoryProxyStore, ProxyGateway

ALICE_EMAIL = "alice@outlook.com"


# =============================================================================
# Message builders
# =============================================================================

def make_raw_mail(
    subject: str,
    sender: str = "Newsletter <news@example.com>",
    date: str = "Mon, 01 Jan 2024 10:00:00 +0000",
    message_id: Optional[str] = None,
    body: str = "Hello there",
    html: Optional[str] = None,
) -> bytes:
    """Build an RFC 822 message the way a mail server would return it."""
    message = EmailMessage()
    message["From"] = sender
    message["To"] = ALICE_EMAIL
    message["Subject"] = subject
    message["Date"] = date
    if message_id:
        message["Message-ID"] = message_id
    message.set_content(body)
    if html:
        message.add_alternative(html, subtype="html")
    return message.as_bytes()


def graph_message(index: int, received: Optional[str] = None) -> Dict:
    """Build a Graph message resource."""
    return {
        "id": f"msg-{index}",
        "subject": f"Subject {index}",
        "from": {"emailAddress": {"address": f"sender{index}@example.com", "name": f"Sender {index}"}},
        "bodyPreview": f"Preview {index}",
        "body": {"contentType": "html", "content": f"<p>Body {index}</p>"},
        "receivedDateTime": received or f"2024-01-{index:02d}T08:00:00Z",
    }


# =============================================================================
# Fake Microsoft endpoints (token + Graph)
# =============================================================================

class FakeMicrosoft:
    """httpx.MockTransport handler emulating the token endpoint and Graph mail API."""

    def __init__(self):
        self.token_requests: List[Dict[str, str]] = []
        self.graph_token_status = 200
        self.imap_token_status = 200
        self.graph_scope = "https://graph.microsoft.com/Mail.Read https://graph.microsoft.com/User.Read"
        self.rotate = True
        self.graph_status = 200
        self.messages: Dict[str, List[Dict]] = {"inbox": [], "junkemail": []}
        self.list_requests: List[httpx.Request] = []
        self.deleted_ids: List[str] = []
        self.delete_fail_ids = set()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/token"):
            return self._token(request)
        if request.method == "GET" and "/mailFolders/" in path:
            return self._list(request)
        if request.method == "DELETE" and "/me/messages/" in path:
            return self._delete(request)
        if path == "/ip":
            return httpx.Response(200, json={"origin": "203.0.113.7"})
        return httpx.Response(404, json={"error": {"code": "NotFound"}})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.read().decode()))
        self.token_requests.append(form)
        is_graph = "graph.microsoft.com" in form.get("scope", "")
        status = self.graph_token_status if is_graph else self.imap_token_status
        if status != 200:
            return httpx.Response(status, json={
                "error": "invalid_grant",
                "error_description": "AADSTS70000: The provided grant has expired"
            })

        number = len(self.token_requests)
        payload = {"token_type": "Bearer", "access_token": f"at-{number}", "expires_in": 3600}
        if is_graph:
            payload["scope"] = self.graph_scope
        if self.rotate:
            payload["refresh_token"] = f"rt-{number}"
        return httpx.Response(200, json=payload)

    def _list(self, request: httpx.Request) -> httpx.Response:
        self.list_requests.append(request)
        if self.graph_status != 200:
            return httpx.Response(self.graph_status, json={"error": {"code": "InvalidAuthenticationToken"}})
        folder = request.url.path.split("/mailFolders/")[1].split("/")[0]
        top = int(request.url.params.get("$top", "10"))
        return httpx.Response(200, json={"value": self.messages.get(folder, [])[:top]})

    def _delete(self, request: httpx.Request) -> httpx.Response:
        mail_id = unquote(request.url.path.rsplit("/", 1)[-1])
        if mail_id in self.delete_fail_ids:
            return httpx.Response(500, json={"error": {"code": "ErrorInternalServerError"}})
        self.deleted_ids.append(mail_id)
        return httpx.Response(204)


# =============================================================================
# Fake IMAP server
# =============================================================================

class FakeIMAP:
    """Stand-in for imaplib.IMAP4_SSL holding raw messages per folder."""

    def __init__(self, mailboxes: Optional[Dict[str, List[bytes]]] = None, fail_auth: bool = False):
        self.mailboxes = {name: list(messages) for name, messages in (mailboxes or {"INBOX": [], "Junk": []}).items()}
        self.fail_auth = fail_auth
        self.selected: Optional[str] = None
        self.auth_payload: Optional[bytes] = None
        self.calls: List[tuple] = []
        self.logged_out = False

    def authenticate(self, mechanism, authobject):
        self.calls.append(("authenticate", mechanism))
        self.auth_payload = authobject(b"")
        if self.fail_auth:
            raise imaplib.IMAP4.error("AUTHENTICATE failed.")
        return "OK", [b"AUTHENTICATE completed."]

    def select(self, mailbox, readonly=False):
        self.calls.append(("select", mailbox, readonly))
        name = mailbox.strip('"')
        if name not in self.mailboxes:
            return "NO", [b"The requested item could not be found."]
        self.selected = name
        return "OK", [str(len(self.mailboxes[name])).encode()]

    def search(self, charset, *criteria):
        self.calls.append(("search",) + criteria)
        count = len(self.mailboxes[self.selected])
        return "OK", [b" ".join(str(i).encode() for i in range(1, count + 1))]

    def fetch(self, message_set, message_parts):
        self.calls.append(("fetch", message_set, message_parts))
        data = []
        for sequence in message_set.split(","):
            raw = self.mailboxes[self.selected][int(sequence) - 1]
            data.append((f"{sequence} (BODY[] {{{len(raw)}}}".encode(), raw))
            data.append(b")")
        return "OK", data

    def store(self, message_set, command, flags):
        self.calls.append(("store", message_set, command, flags))
        return "OK", []

    def expunge(self):
        self.calls.append(("expunge",))
        self.mailboxes[self.selected] = []
        return "OK", []

    def logout(self):
        self.logged_out = True
        return "BYE", [b"Logging out"]


class FakeIMAPFactory:
    """Connection factory handing out a single FakeIMAP and recording how it was asked for."""

    def __init__(self, server: FakeIMAP):
        self.server = server
        self.connections: List[tuple] = []

    def __call__(self, host, port, egress, timeout):
        self.connections.append((host, port, egress, timeout))
        return self.server


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def microsoft():
    return FakeMicrosoft()


@pytest.fixture
def imap_server():
    return FakeIMAP()


@pytest.fixture
def imap_factory(imap_server):
    return FakeIMAPFactory(imap_server)


@pytest.fixture
def gateway(microsoft):
    return ProxyGateway(InMemoryProxyStore(), transport_factory=microsoft.transport)


@pytest.fixture
def account():
    return Account(id=1, email=ALICE_EMAIL, client_id="client-1", refresh_token="rt-initial")


@pytest.fixture
def services(microsoft, imap_factory, account):
    accounts = InMemoryAccountStore([account])
    proxies = InMemoryProxyStore()
    gateway = ProxyGateway(proxies, transport_factory=microsoft.transport)
    return build_services(
        accounts,
        proxies,
        MailCache(InMemoryMailCacheStore()),
        gateway=gateway,
        imap=ImapProtocolClient(connection_factory=imap_factory),
    )
