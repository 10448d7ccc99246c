from __future__ import annotations

import re
from string import hexdigits
from threading import Lock

import httpx

from awe_supervisor.config import Settings
from awe_supervisor.observability import get_logger

_log = get_logger('awe_supervisor.hosting')

_API_VERSION = '2022-11-28'
_MAX_SLUG_LENGTH = 60
_MAX_LIST_PAGES = 10
_PER_PAGE = 100


class ResolutionError(RuntimeError):
    """The task repository could not be found or created; fatal for the task."""


def slugify(title: str) -> str:
    text = re.sub(r'[^a-z0-9]+', '-', str(title or '').strip().lower()).strip('-')
    text = text[:_MAX_SLUG_LENGTH].rstrip('-')
    return text or 'untitled'


def task_id_suffix(task_id: str) -> str:
    text = str(task_id or '').strip().lower()
    hex_only = ''.join(ch for ch in text if ch in hexdigits)
    if len(hex_only) >= 8:
        return hex_only[:8]
    fallback = re.sub(r'[^a-z0-9]+', '', text)[:8]
    if not fallback:
        raise ValueError('task_id is required')
    return fallback


def repository_prefix(title: str) -> str:
    return f'task-{slugify(title)}'


def repository_name(task_id: str, title: str) -> str:
    return f'{repository_prefix(title)}-{task_id_suffix(task_id)}'


def matches_prefix(name: str, title: str) -> bool:
    prefix = repository_prefix(title)
    text = str(name or '').strip().lower()
    if text == prefix:
        return True
    return re.fullmatch(re.escape(prefix) + r'-[0-9a-f]{8}', text) is not None


class HostingClient:
    """Thin client over a GitHub-compatible REST API."""

    def __init__(
        self,
        *,
        api_base: str,
        token: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        token_text = str(token or '').strip()
        if not token_text:
            raise ResolutionError('hosting token is not configured')
        self.api_base = str(api_base or '').rstrip('/')
        self._client = httpx.Client(
            base_url=self.api_base,
            timeout=timeout,
            transport=transport,
            headers={
                'Authorization': f'Bearer {token_text}',
                'Accept': 'application/vnd.github+json',
                'X-GitHub-Api-Version': _API_VERSION,
            },
        )

    def close(self) -> None:
        self._client.close()

    def get_repository(self, owner: str, name: str) -> dict | None:
        resp = self._client.get(f'/repos/{owner}/{name}')
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()

    def list_repositories(self, owner: str) -> list[dict]:
        """Repositories under ``owner``, most recently updated first.

        Tries the organisation listing and falls back to the user listing when
        the owner is not an organisation.
        """
        rows = self._list_pages(f'/orgs/{owner}/repos')
        if rows is None:
            rows = self._list_pages(f'/users/{owner}/repos') or []
        return sorted(rows, key=lambda row: str(row.get('updated_at') or ''), reverse=True)

    def create_repository(
        self,
        name: str,
        *,
        description: str,
        private: bool = True,
        org: str | None = None,
    ) -> dict:
        path = f'/orgs/{org}/repos' if org else '/user/repos'
        resp = self._client.post(
            path,
            json={
                'name': name,
                'description': description,
                'private': bool(private),
                'auto_init': True,
            },
        )
        resp.raise_for_status()
        return resp.json()

    def authenticated_login(self) -> str:
        resp = self._client.get('/user')
        resp.raise_for_status()
        return str(resp.json().get('login') or '').strip()

    def _list_pages(self, path: str) -> list[dict] | None:
        rows: list[dict] = []
        for page in range(1, _MAX_LIST_PAGES + 1):
            resp = self._client.get(path, params={'per_page': _PER_PAGE, 'page': page, 'sort': 'updated'})
            if resp.status_code == 404 and page == 1:
                return None
            resp.raise_for_status()
            batch = resp.json()
            if not isinstance(batch, list):
                break
            rows.extend(item for item in batch if isinstance(item, dict))
            if len(batch) < _PER_PAGE:
                break
        return rows


def _is_name_taken(exc: httpx.HTTPStatusError) -> bool:
    if exc.response.status_code != 422:
        return False
    return 'already exists' in exc.response.text.lower()


def _repository_url(row: dict) -> str:
    url = str(row.get('html_url') or row.get('url') or '').strip()
    if not url:
        raise ResolutionError(f'repository has no url name={row.get("name")}')
    return url


class RepositoryResolver:
    def __init__(
        self,
        client: HostingClient,
        *,
        org: str,
        private: bool = True,
    ):
        org_text = str(org or '').strip()
        if not org_text:
            raise ResolutionError('hosting organisation is not configured')
        self.client = client
        self.org = org_text
        self.private = bool(private)
        self._cache: dict[str, str] = {}
        self._login: str | None = None
        self._lock = Lock()

    def resolve(self, task_id: str, title: str) -> str:
        with self._lock:
            cached = self._cache.get(task_id)
        if cached:
            return cached
        try:
            url = self._resolve_uncached(task_id, title)
        except httpx.HTTPError as exc:
            _log.error('repository resolution failed task_id=%s error=%s', task_id, exc)
            raise ResolutionError(f'repository resolution failed: {exc}') from exc
        with self._lock:
            # first resolution wins if two threads raced
            url = self._cache.setdefault(task_id, url)
        return url

    def _resolve_uncached(self, task_id: str, title: str) -> str:
        exact = repository_name(task_id, title)
        owners = self._owners()

        for owner in owners:
            found = self.client.get_repository(owner, exact)
            if found is not None:
                _log.info('repository exact match task_id=%s owner=%s name=%s', task_id, owner, exact)
                return _repository_url(found)

        candidates = [
            row
            for owner in owners
            for row in self.client.list_repositories(owner)
            if matches_prefix(row.get('name'), title)
        ]
        if candidates:
            # most recently updated across every scope searched
            candidates.sort(key=lambda row: str(row.get('updated_at') or ''), reverse=True)
            chosen = candidates[0]
            _log.info(
                'repository reused task_id=%s name=%s candidates=%s',
                task_id,
                chosen.get('name'),
                len(candidates),
            )
            return _repository_url(chosen)

        return self._create(task_id, exact, title)

    def _create(self, task_id: str, name: str, title: str) -> str:
        description = f'Execution workspace for: {str(title or "").strip()}'[:350]
        try:
            created = self.client.create_repository(name, description=description, private=self.private, org=self.org)
            _log.info('repository created task_id=%s scope=org name=%s', task_id, name)
            return _repository_url(created)
        except httpx.HTTPStatusError as exc:
            if _is_name_taken(exc):
                return self._reread(self.org, name)
            _log.warning(
                'org repository creation failed task_id=%s status=%s; trying user scope',
                task_id,
                exc.response.status_code,
            )

        try:
            created = self.client.create_repository(name, description=description, private=self.private)
        except httpx.HTTPStatusError as exc:
            login = self._login_or_none()
            if _is_name_taken(exc) and login:
                return self._reread(login, name)
            raise
        _log.info('repository created task_id=%s scope=user name=%s', task_id, name)
        return _repository_url(created)

    def _reread(self, owner: str, name: str) -> str:
        found = self.client.get_repository(owner, name)
        if found is None:
            raise ResolutionError(f'repository reported as existing but not readable owner={owner} name={name}')
        return _repository_url(found)

    def _owners(self) -> list[str]:
        owners = [self.org]
        login = self._login_or_none()
        if login and login.lower() != self.org.lower():
            owners.append(login)
        return owners

    def _login_or_none(self) -> str | None:
        if self._login is not None:
            return self._login or None
        try:
            self._login = self.client.authenticated_login()
        except httpx.HTTPStatusError as exc:
            _log.warning('authenticated login unavailable status=%s', exc.response.status_code)
            self._login = ''
        return self._login or None


def build_resolver(settings: Settings, *, transport: httpx.BaseTransport | None = None) -> RepositoryResolver | None:
    """Resolver for the configured hosting API, or None when hosting is disabled."""
    if not settings.hosting_enabled:
        return None
    if not settings.hosting_token:
        raise ResolutionError('AWE_HOSTING_TOKEN is required when hosting is enabled')
    if not settings.hosting_org:
        raise ResolutionError('AWE_HOSTING_ORG is required when hosting is enabled')
    client = HostingClient(api_base=settings.hosting_api_base, token=settings.hosting_token, transport=transport)
    return RepositoryResolver(client, org=settings.hosting_org, private=settings.hosting_private)


__all__ = [
    'HostingClient',
    'RepositoryResolver',
    'ResolutionError',
    'build_resolver',
    'matches_prefix',
    'repository_name',
    'repository_prefix',
    'slugify',
    'task_id_suffix',
]
