import argparse
import os
import re
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import requests

# =========================
# Config / Tunables
# =========================
API_BASE = "https://api.github.com"
GRAPHQL_URL = f"{API_BASE}/graphql"
GITHUB_WEB = "https://github.com"
USER_AGENT = "definitely-typed-ghostbuster"

MAX_BATCH_SIZE = 2000           # aliased lookups per GraphQL request
REQUEST_TIMEOUT = 40
PACE_SECONDS = 0.20             # pacing to reduce secondary rate-limit risk

DEFAULT_ROOTS = ["types"]
HEADER_FILENAME = "index.d.ts"
SKIP_DIRS = {"node_modules"}

# Header convention
HEADER_START = "// Type definitions for"
ATTRIBUTION_LABEL = "// Definitions by:"
ATTRIBUTION_CONTINUATION = "//" + " " * 16
DEFINITIONS_LABEL = "// Definitions:"
PLACEHOLDER_OWNER = "DefinitelyTyped"
PLACEHOLDER_LINE = f"{ATTRIBUTION_LABEL} {PLACEHOLDER_OWNER} <{GITHUB_WEB}/{PLACEHOLDER_OWNER}>"


def load_token(environ: Mapping[str, str]) -> str:
    token = environ.get("GITHUB_TOKEN")
    if not token:
        raise SystemExit("Missing GITHUB_TOKEN env var")
    return token


# =========================
# Errors
# =========================
class GhostbusterError(RuntimeError):
    pass


class HeaderParseError(GhostbusterError):
    pass


class GraphQLError(GhostbusterError):
    pass


class PatchError(GhostbusterError):
    pass


# =========================
# HTTP + Rate Limit Handling
# =========================
def _backoff_sleep(resp: requests.Response, attempt: int) -> None:
    """
    Handle primary + secondary-ish rate limits.
    """
    retry_after = resp.headers.get("retry-after")
    if retry_after:
        wait = min(int(retry_after), 60) + 1
        time.sleep(wait)
        return

    remaining = resp.headers.get("x-ratelimit-remaining")
    reset = resp.headers.get("x-ratelimit-reset")

    if remaining == "0" and reset:
        now = int(time.time())
        reset_ts = int(reset)
        wait = max(0, reset_ts - now + 2)
        time.sleep(min(wait, 180))
        return

    wait = min((2 ** attempt), 60)
    time.sleep(wait)


@dataclass
class GraphQLResult:
    data: Dict[str, Any]
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any, status_code: int = 200) -> "GraphQLResult":
        """
        A body carrying a `data` object is usable even when `errors` is also set
        (one bad login in a batch should not sink the other lookups).
        """
        if not isinstance(payload, dict):
            raise GraphQLError(f"GraphQL request failed: HTTP {status_code}, no JSON body")

        errors = payload.get("errors") or []
        if not isinstance(errors, list):
            errors = [{"message": str(errors)}]

        data = payload.get("data")
        if not isinstance(data, dict):
            messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            raise GraphQLError(f"GraphQL request failed: HTTP {status_code}: {messages or 'no data returned'}")

        return cls(data=data, errors=errors)


class GitHubClient:
    def __init__(
        self,
        token: str,
        session: Optional[requests.Session] = None,
        graphql_url: str = GRAPHQL_URL,
        timeout: int = REQUEST_TIMEOUT,
        pace_seconds: float = PACE_SECONDS,
    ) -> None:
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": USER_AGENT,
            }
        )
        self.graphql_url = graphql_url
        self.timeout = timeout
        self.pace_seconds = pace_seconds

    def close(self) -> None:
        self.session.close()

    def _post(self, url: str, payload: Dict[str, Any], attempts: int = 7) -> requests.Response:
        last: Optional[requests.Response] = None
        last_exc: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                resp = self.session.post(url, json=payload, timeout=self.timeout)
                last = resp
            except requests.RequestException as exc:
                last_exc = exc
                time.sleep(min(2 ** attempt, 30))
                continue

            if resp.status_code in (403, 429):
                _backoff_sleep(resp, attempt)
                continue

            return resp

        if last is not None:
            return last
        raise GraphQLError(f"POST failed after {attempts} attempts: {url}") from last_exc

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> GraphQLResult:
        resp = self._post(self.graphql_url, {"query": query, "variables": variables or {}})
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if self.pace_seconds:
            time.sleep(self.pace_seconds)
        return GraphQLResult.from_payload(payload, status_code=resp.status_code)


# =========================
# Header Model + Parsing
# =========================
@dataclass(frozen=True)
class Contributor:
    name: str
    url: str
    github_username: Optional[str] = None


@dataclass(frozen=True)
class Header:
    contributors: Tuple[Contributor, ...]
    raw: str


_ENTRY_RE = re.compile(r"\s*(?P<name>[^<>,]+?)\s*<(?P<url>[^<>\s]+)>\s*(?:,|$)")
_GITHUB_PROFILE_RE = re.compile(r"^https?://github\.com/(?P<login>[A-Za-z\d](?:[A-Za-z\d-]*[A-Za-z\d])?)/?$", re.I)
_CONTINUATION_RE = re.compile(r"^//\s{2,}(?P<rest>\S.*)$")


def _parse_contributors(content: str, line_no: int) -> List[Contributor]:
    out = []
    content = content.strip()
    pos = 0
    while pos < len(content):
        m = _ENTRY_RE.match(content, pos)
        if not m or m.end() == pos:
            raise HeaderParseError(f"line {line_no}: malformed contributor entry: {content[pos:]!r}")
        url = m.group("url")
        profile = _GITHUB_PROFILE_RE.match(url)
        out.append(
            Contributor(
                name=m.group("name"),
                url=url,
                github_username=profile.group("login") if profile else None,
            )
        )
        pos = m.end()
    return out


def parse_header(text: str) -> Header:
    lines = text.splitlines()
    first = next((line for line in lines if line.strip()), "")
    if not first.startswith(HEADER_START):
        raise HeaderParseError(f"header must start with {HEADER_START!r}")

    contributors: List[Contributor] = []
    in_attribution = False
    seen_attribution = False
    seen_definitions = False

    for i, line in enumerate(lines, start=1):
        if not line.startswith("//"):
            # the header ends at the first non-comment line
            break
        line = line.rstrip()
        if line.startswith(ATTRIBUTION_LABEL):
            if seen_attribution:
                raise HeaderParseError(f"line {i}: duplicate {ATTRIBUTION_LABEL!r}")
            seen_attribution = in_attribution = True
            listed = _parse_contributors(line[len(ATTRIBUTION_LABEL):], i)
            if not listed:
                raise HeaderParseError(f"line {i}: {ATTRIBUTION_LABEL!r} must name a contributor")
            contributors.extend(listed)
            continue
        if in_attribution:
            m = _CONTINUATION_RE.match(line)
            if m:
                contributors.extend(_parse_contributors(m.group("rest"), i))
                continue
            in_attribution = False
            if not line.startswith(DEFINITIONS_LABEL):
                raise HeaderParseError(f"line {i}: expected {DEFINITIONS_LABEL!r} right after the attribution block")
        if line.startswith(DEFINITIONS_LABEL):
            if not seen_attribution:
                raise HeaderParseError(f"line {i}: {DEFINITIONS_LABEL!r} before {ATTRIBUTION_LABEL!r}")
            seen_definitions = True

    if not seen_attribution:
        raise HeaderParseError(f"missing {ATTRIBUTION_LABEL!r}")
    if not seen_definitions:
        raise HeaderParseError(f"missing {DEFINITIONS_LABEL!r}")
    if not contributors:
        raise HeaderParseError("no contributors listed")

    return Header(contributors=tuple(contributors), raw=text)


# =========================
# Deleted Account Lookup
# =========================
@dataclass
class LookupBatch:
    """
    One GraphQL round trip: `l{i}: <kind>(login: $l{i}) { id }` per login.
    Results are matched back through the alias, never through response order.
    """
    kind: str
    logins: List[str]

    def query(self) -> str:
        params = ", ".join(f"$l{i}: String!" for i in range(len(self.logins)))
        fields = "\n".join(f"  l{i}: {self.kind}(login: $l{i}) {{ id }}" for i in range(len(self.logins)))
        return f"query({params}) {{\n{fields}\n}}"

    def variables(self) -> Dict[str, str]:
        return {f"l{i}": login for i, login in enumerate(self.logins)}

    def missing(self, result: GraphQLResult) -> List[str]:
        out = []
        for i, login in enumerate(self.logins):
            value = result.data.get(f"l{i}")
            if value is None:
                out.append(login)
            elif not isinstance(value, dict):
                raise GraphQLError(f"Unexpected {self.kind} lookup value for {login!r}: {value!r}")
        return out


def iter_batches(items: List[str], batch_size: int) -> Iterator[List[str]]:
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    for start in range(0, len(items), batch_size):
        yield items[start:start + batch_size]


def _missing_logins(client: Any, kind: str, logins: List[str], batch_size: int) -> List[str]:
    missing: List[str] = []
    for chunk in iter_batches(logins, batch_size):
        batch = LookupBatch(kind, chunk)
        result = client.graphql(batch.query(), batch.variables())
        missing.extend(batch.missing(result))
    return missing


def find_ghosts(client: Any, usernames: Iterable[str], batch_size: int = MAX_BATCH_SIZE) -> Set[str]:
    """
    Return the lower-cased logins that resolve to neither a user nor an organization.

    `client` only needs a `graphql(query, variables) -> GraphQLResult` method.
    """
    logins = sorted({u.lower() for u in usernames if u})
    if not logins:
        return set()

    candidates = _missing_logins(client, "user", logins, batch_size)
    if not candidates:
        return set()

    # Users and organizations share one namespace; an org login is not a ghost.
    return set(_missing_logins(client, "organization", candidates, batch_size))


# =========================
# Header Collection
# =========================
def iter_header_paths(
    root: str,
    filename: str = HEADER_FILENAME,
    skip_dirs: Set[str] = SKIP_DIRS,
) -> Iterator[str]:
    root = os.path.abspath(root)
    for dirpath, dirnames, _ in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skip_dirs)
        if dirpath == root:
            continue
        yield os.path.join(dirpath, filename)


def _read_text(path: str) -> Optional[str]:
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_text(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def collect_headers(
    paths: Iterable[str],
    read_text: Callable[[str], Optional[str]] = _read_text,
) -> Dict[str, Header]:
    headers: Dict[str, Header] = {}
    for path in paths:
        text = read_text(path)
        if text is None:
            continue
        try:
            headers[path] = parse_header(text)
        except HeaderParseError:
            continue
    return headers


def collect_all(roots: Iterable[str]) -> Dict[str, Header]:
    print("Reading headers...")
    headers: Dict[str, Header] = {}
    for root in roots:
        headers.update(collect_headers(iter_header_paths(root)))
    print(f"Parsed {len(headers)} headers.")
    return headers


def all_contributor_usernames(headers: Iterable[Header]) -> Set[str]:
    return {
        c.github_username.lower()
        for h in headers
        for c in h.contributors
        if c.github_username
    }


# =========================
# Attribution Patching
# =========================
_ATTRIBUTION_LINE_RE = re.compile(r"^" + re.escape(ATTRIBUTION_LABEL) + r"[^\r\n]*", re.M | re.I)


def is_ghost(contributor: Contributor, ghosts: Set[str]) -> bool:
    return bool(contributor.github_username) and contributor.github_username.lower() in ghosts


def profile_url(contributor: Contributor) -> str:
    if contributor.github_username:
        return f"{GITHUB_WEB}/{contributor.github_username}"
    return contributor.url


def line_ending(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def format_attribution(contributors: List[Contributor], newline: str = "\n") -> str:
    lines = []
    for i, c in enumerate(contributors):
        prefix = ATTRIBUTION_LABEL if i == 0 else ATTRIBUTION_CONTINUATION
        lines.append(f"{prefix} {c.name} <{profile_url(c)}>{newline}")
    return "".join(lines)


def replace_span(text: str, start: int, end: int, replacement: str) -> str:
    if not 0 <= start <= end <= len(text):
        raise PatchError(f"Invalid span [{start}, {end}) for text of length {len(text)}")
    return text[:start] + replacement + text[end:]


def patch_text(header: Header, ghosts: Set[str]) -> Optional[str]:
    """
    Return the header text with ghost contributors removed, or None when
    no contributor is a ghost. Raises PatchError when the raw text does not
    follow the header convention closely enough to edit safely.
    """
    if not any(is_ghost(c, ghosts) for c in header.contributors):
        return None

    raw = header.raw
    if len(header.contributors) == 1:
        new_content = _ATTRIBUTION_LINE_RE.sub(lambda m: PLACEHOLDER_LINE, raw, count=1)
        if new_content == raw:
            raise PatchError("Patch failed.")
        return new_content

    survivors = [c for c in header.contributors if not is_ghost(c, ghosts)]
    if len(survivors) == len(header.contributors):
        raise PatchError("Didn't remove anyone")

    newline = line_ending(raw)
    # everyone gone: fall back to the same placeholder as a lone ghost
    block = format_attribution(survivors, newline) if survivors else PLACEHOLDER_LINE + newline

    start = raw.find(ATTRIBUTION_LABEL)
    end = raw.find(DEFINITIONS_LABEL)
    if start == -1:
        raise PatchError(f"No {ATTRIBUTION_LABEL!r}")
    if end == -1:
        raise PatchError(f"No {DEFINITIONS_LABEL!r}")
    if end < start:
        raise PatchError("Definition header not in expected order")
    # only the attribution block may sit between the two labels
    for line in raw[start:end].splitlines()[1:]:
        if not _CONTINUATION_RE.match(line.rstrip()):
            raise PatchError(f"Unexpected line between {ATTRIBUTION_LABEL!r} and {DEFINITIONS_LABEL!r}: {line!r}")
    return replace_span(raw, start, end, block)


def bust(
    path: str,
    header: Header,
    ghosts: Set[str],
    write_text: Callable[[str, str], None] = _write_text,
    dry_run: bool = False,
) -> bool:
    if not any(is_ghost(c, ghosts) for c in header.contributors):
        return False

    print(f"Found one or more deleted accounts in {path}. Patching...")
    new_content = patch_text(header, ghosts)
    if new_content is None or new_content == header.raw:
        return False
    if not dry_run:
        write_text(path, new_content)
    return True


# =========================
# Orchestration
# =========================
def run(
    roots: Iterable[str],
    client: Any,
    batch_size: int = MAX_BATCH_SIZE,
    dry_run: bool = False,
) -> List[str]:
    headers = collect_all(roots)
    users = all_contributor_usernames(headers.values())

    print(f"Checking for deleted accounts among {len(users)} users...")
    ghosts = find_ghosts(client, users, batch_size=batch_size)
    if not ghosts:
        print("No ghosts found")
        return []
    print(f"Found {len(ghosts)} deleted accounts: {', '.join(sorted(ghosts))}")

    patched = []
    for path in sorted(headers):
        if bust(path, headers[path], ghosts, dry_run=dry_run):
            patched.append(path)
    return patched


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Remove deleted GitHub accounts from the 'Definitions by:' headers of type declaration files."
    )
    p.add_argument(
        "roots",
        nargs="*",
        default=DEFAULT_ROOTS,
        help=f"Directories to scan for {HEADER_FILENAME} headers (default: {' '.join(DEFAULT_ROOTS)}).",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the files that would be patched without writing them.",
    )
    p.add_argument(
        "--batch-size",
        type=int,
        default=MAX_BATCH_SIZE,
        help=f"Logins per GraphQL request (default: {MAX_BATCH_SIZE}).",
    )
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    token = load_token(os.environ)

    client = GitHubClient(token)
    try:
        patched = run(args.roots, client, batch_size=args.batch_size, dry_run=args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        client.close()

    verb = "Would patch" if args.dry_run else "Patched"
    print(f"Done. {verb} {len(patched)} files.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
