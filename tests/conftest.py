"""Shared fakes for ODNAV tests. Nothing here touches the network or the keyring."""

from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from odnav.config import Config
from odnav.credential_store import CredentialStore
from odnav.errors import AuthRequired, NetworkError
from odnav.token_broker import TokenBroker


ACCOUNT = {
    'home_account_id': 'uid-1.tenant-1',
    'local_account_id': 'oid-1',
    'username': 'user@example.com',
    'environment': 'login.microsoftonline.com',
}


def token_result(token='token-1', username='user@example.com', oid='oid-1'):
    return {
        'access_token': token,
        'expires_in': 3600,
        'id_token_claims': {'preferred_username': username, 'oid': oid},
    }


class FakeMsalApp:
    """Stands in for msal.PublicClientApplication."""

    def __init__(self, accounts=None):
        self.accounts = list(accounts or [])
        self.token_cache = None
        self.silent_results = []
        self.interactive_results = []
        self.popup_error = None
        self.calls = []
        self._counter = 0

    def _next_token(self):
        self._counter += 1
        return f"token-{self._counter}"

    def _sign_in(self, account=None):
        account = account or ACCOUNT
        if account not in self.accounts:
            self.accounts.append(account)
        return token_result(self._next_token(), account['username'], account['local_account_id'])

    def get_accounts(self):
        return list(self.accounts)

    def acquire_token_silent(self, scopes, account=None):
        self.calls.append(('silent', list(scopes)))
        if self.silent_results:
            return self.silent_results.pop(0)
        if account in self.accounts:
            return token_result(self._next_token(), account['username'], account['local_account_id'])
        return None

    def acquire_token_interactive(self, scopes, **kwargs):
        self.calls.append(('interactive', list(scopes)))
        if self.popup_error is not None:
            raise self.popup_error
        if self.interactive_results:
            return self.interactive_results.pop(0)
        return self._sign_in()

    def initiate_auth_code_flow(self, scopes, redirect_uri=None, **kwargs):
        self.calls.append(('initiate', list(scopes)))
        return {
            'auth_uri': f"https://login.example.com/authorize?state=state-1&redirect_uri={redirect_uri}",
            'state': 'state-1',
            'redirect_uri': redirect_uri,
            'scope': list(scopes),
        }

    def acquire_token_by_auth_code_flow(self, flow, params):
        self.calls.append(('redeem', dict(params)))
        if params.get('state') != flow.get('state'):
            raise ValueError("state missing from auth_code_flow")
        if 'error' in params:
            return {'error': params['error'], 'error_description': params.get('error_description', '')}
        return self._sign_in()

    def remove_account(self, account):
        self.calls.append(('remove', account.get('username')))
        if account in self.accounts:
            self.accounts.remove(account)

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


def folder(item_id, name, parent_id=None):
    return {'id': item_id, 'name': name, 'folder': {'childCount': 0},
            'parentReference': {'id': parent_id}}


def file_item(item_id, name, size=10, parent_id=None):
    return {'id': item_id, 'name': name, 'file': {}, 'size': size,
            'parentReference': {'id': parent_id}}


class FakeGraph:
    """Stands in for GraphClient, keyed by folder id (None is the root)."""

    def __init__(self):
        self.tree = {
            None: [folder('A', 'Documents'), folder('B', 'Photos'), file_item('F', 'notes.txt')],
            'A': [folder('A1', 'Work', 'A'), folder('A2', 'Personal', 'A')],
            'A1': [file_item('W1', 'plan.docx', parent_id='A1')],
            'B': [],
        }
        self.errors = []
        self.calls = []
        self.tokens = []

    def _maybe_fail(self):
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error

    def list_children(self, token, folder_id=None):
        self.calls.append(('list', folder_id))
        self.tokens.append(token)
        self._maybe_fail()
        return list(self.tree.get(folder_id, []))

    def create_folder(self, token, name, parent_id=None):
        self.calls.append(('create', name, parent_id))
        self._maybe_fail()
        existing = {item['name'] for item in self.tree.get(parent_id, [])}
        final = name if name not in existing else f"{name} 1"
        item = folder(f"new-{len(self.calls)}", final, parent_id)
        self.tree.setdefault(parent_id, []).append(item)
        return item

    def rename_item(self, token, item_id, name):
        self.calls.append(('rename', item_id, name))
        self._maybe_fail()
        for items in self.tree.values():
            for item in items:
                if item['id'] == item_id:
                    item['name'] = name
                    return dict(item)
        return folder(item_id, name)

    def delete_item(self, token, item_id):
        self.calls.append(('delete', item_id))
        self._maybe_fail()
        for key, items in self.tree.items():
            self.tree[key] = [item for item in items if item['id'] != item_id]

    def upload_file(self, token, local_path, remote_path):
        self.calls.append(('upload', str(local_path), remote_path))
        self._maybe_fail()
        return file_item('U1', Path(remote_path).name, size=Path(local_path).stat().st_size)

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


def expired():
    return AuthRequired("Access token rejected: InvalidAuthenticationToken")


def offline():
    return NetworkError("Network failure: connection refused")


@pytest.fixture
def config(tmp_path):
    return Config(tmp_path / "config")


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "session.json", encryption_key=Fernet.generate_key())


@pytest.fixture
def fake_app():
    return FakeMsalApp()


@pytest.fixture
def signed_in_app():
    return FakeMsalApp(accounts=[ACCOUNT])


def make_broker(store, app, **kwargs):
    kwargs.setdefault('browser_opener', lambda url: True)
    return TokenBroker(
        client_id='df3a0308-c302-4962-b115-08bd59526bc5',
        authority='https://login.microsoftonline.com/consumers',
        redirect_uri='http://localhost:8080',
        store=store,
        app=app,
        **kwargs,
    )


@pytest.fixture
def broker(store, fake_app):
    return make_broker(store, fake_app)


@pytest.fixture
def graph():
    return FakeGraph()
