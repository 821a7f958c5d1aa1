"""k3s versions and the upstream release list."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

from loguru import logger

from hetzner_k3s.core.exceptions import ProviderError
from hetzner_k3s.infra.http import BearerAuth, HttpClient, HttpError

GITHUB_API = "https://api.github.com"
RELEASES_PATH = "/repos/k3s-io/k3s/releases"
PER_PAGE = 100

# Wireguard-native flannel backend is available from this release on.
WIREGUARD_NATIVE_MIN_VERSION = "v1.23.6+k3s1"

_VERSION = re.compile(
    r"^v?(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)
_LINK_NEXT = re.compile(r'<([^>]+)>;\s*rel="next"')

log = logger.bind(component="releases")


def _pre_key(pre: str) -> tuple[tuple[int, int | str], ...]:
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in pre.split("."))


@total_ordering
@dataclass(frozen=True, slots=True)
class K3sVersion:
    """A k3s release version such as ``v1.26.4+k3s1``.

    Ordered by major, minor, patch, then pre-release (a release sorts after
    its pre-releases), then the numeric ``k3sN`` build suffix.
    """

    major: int
    minor: int
    patch: int
    pre: str = ""
    build: str = ""

    @classmethod
    def parse(cls, text: str) -> K3sVersion:
        match = _VERSION.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid k3s version: {text!r}")
        return cls(
            major=int(match["major"]),
            minor=int(match["minor"]),
            patch=int(match["patch"]),
            pre=match["pre"] or "",
            build=match["build"] or "",
        )

    @property
    def build_number(self) -> int:
        digits = re.findall(r"\d+", self.build)
        return int(digits[-1]) if digits else 0

    def _key(self) -> tuple:
        pre = (1, ()) if not self.pre else (0, _pre_key(self.pre))
        return (self.major, self.minor, self.patch, pre, self.build_number)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, K3sVersion):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        text = f"v{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            text += f"-{self.pre}"
        if self.build:
            text += f"+{self.build}"
        return text


def supports_wireguard_native(version: str) -> bool:
    return K3sVersion.parse(version) >= K3sVersion.parse(WIREGUARD_NATIVE_MIN_VERSION)


def sort_versions(names: list[str], pattern: str | None = None) -> list[str]:
    """Parse, filter and sort release names ascending.

    Names that are not versions are dropped. ``pattern`` is a regular
    expression searched in each name.
    """
    regex = re.compile(pattern) if pattern else None
    parsed: list[K3sVersion] = []
    for name in names:
        if regex is not None and not regex.search(name):
            continue
        try:
            parsed.append(K3sVersion.parse(name))
        except ValueError:
            log.debug("Skipping release {name}", name=name)
    return [str(v) for v in sorted(parsed)]


class ReleaseLister:
    """Lists k3s releases published on GitHub.

    Example:
        async with ReleaseLister(token) as lister:
            latest = await lister.available(latest=True)
    """

    def __init__(self, github_token: str | None = None, *, http: HttpClient | None = None) -> None:
        auth = BearerAuth(github_token, scheme="token") if github_token else None
        self._http = http or HttpClient(
            GITHUB_API, auth, default_headers={"Accept": "application/vnd.github+json"}
        )

    async def __aenter__(self) -> ReleaseLister:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self._http.close()

    async def _names(self) -> list[str]:
        names: list[str] = []
        url: str | None = RELEASES_PATH
        params: dict[str, int] | None = {"per_page": PER_PAGE}
        while url:
            try:
                response = await self._http.send("GET", url, params=params)
            except HttpError as e:
                raise ProviderError("List k3s releases", e.body, e.status) from e
            names.extend(r["name"] for r in response.data or [] if r.get("name"))
            match = _LINK_NEXT.search(response.headers.get("Link", ""))
            url = match.group(1) if match else None
            params = None  # the next link already carries the query
        return names

    async def available(self, pattern: str | None = None, *, latest: bool = False) -> list[str]:
        """Release versions, oldest first.

        Args:
            pattern: Optional regular expression filter.
            latest: Return only the newest matching release.
        """
        versions = sort_versions(await self._names(), pattern)
        return versions[-1:] if latest else versions

    async def exists(self, version: str) -> bool:
        return version in await self.available()
