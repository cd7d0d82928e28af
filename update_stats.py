#!/usr/bin/env python3
"""
Profile stats updater.

Collects, for every repository of one account:
- Language byte distribution (summed across repositories)
- Commit count on the default branch (or the account's contributions)

and writes:
- an SVG language card (SVG_PATH)
- a Markdown block between the stats markers of README_PATH

Environment Variables:
  GH_TOKEN (optional)      : Personal token. Falls back to ACCESS_TOKEN, then GITHUB_TOKEN.
  USER_NAME                : GitHub login. Defaults to actor / repository owner / DEFAULT_USER.
  README_PATH              : README to update. Default README.md.
  SVG_PATH                 : SVG card to write. Default languages.svg.
  COMMIT_SOURCE            : 'commits' (default branch history) or 'contributors'.
  WORKERS                  : Repositories processed concurrently. Default 1.
  VISIBILITY / AFFILIATION : Repo listing filters when a token is set. Default all / owner.
  INCLUDE_FORKS            : '0' => skip forks. Default '1'.
  INCLUDE_ARCHIVED         : '0' => skip archived repos. Default '1'.
  SKIP_LANGS               : Comma separated languages to ignore.
  TOP_N                    : Max language rows on the card. '0' => all.
  THEME                    : 'dark' or 'light'.
  REQUEST_TIMEOUT          : Seconds per request. Default 30.
  GENERATED_AT             : ISO-8601 timestamp to stamp instead of now.
  DEBUG                    : '1' => verbose output.
"""

from __future__ import annotations
import os
import re
import sys
import time
import datetime
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional
from urllib.parse import parse_qs, urlparse

import requests
from dateutil import parser as date_parser
from dateutil import tz
from lxml import etree

# ------------------ Config & Env ------------------
API_ROOT = "https://api.github.com"
API_VERSION = "2022-11-28"
DEFAULT_USER = "GavinHaydy"
PAGE_SIZE = 100

START_MARKER = "<!-- STATS:START -->"
END_MARKER = "<!-- STATS:END -->"

COMMIT_SOURCES = ("commits", "contributors")

DEBUG = os.environ.get("DEBUG", "0") == "1"


def debug(msg: str):
    if DEBUG:
        print(f"[DEBUG] {msg}")


def warn(msg: str):
    print(f"[WARN] {msg}")


@dataclass(frozen=True)
class Config:
    login: str
    token: Optional[str] = None
    readme_path: str = "README.md"
    svg_path: str = "languages.svg"
    commit_source: str = "commits"
    workers: int = 1
    visibility: str = "all"
    affiliation: str = "owner"
    include_forks: bool = True
    include_archived: bool = True
    skip_languages: frozenset = frozenset()
    top_n: int = 0
    theme: str = "dark"
    timeout: float = 30.0
    generated_at: Optional[datetime.datetime] = None


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(env: Mapping[str, str], name: str, default, cast=int, minimum=0):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        print(f"Invalid {name}={raw!r}. Using default {default}.")
        return default
    if value < minimum:
        print(f"Invalid {name}={raw!r} (below {minimum}). Using default {default}.")
        return default
    return value


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """Build the run configuration from environment variables.

    This is the only place the process environment is consulted for run
    settings; everything downstream receives the returned Config.
    """
    if env is None:
        env = os.environ
    repository = env.get("GITHUB_REPOSITORY", "")
    default_owner = repository.split("/")[0] if "/" in repository else ""
    login = env.get("USER_NAME") or env.get("GITHUB_ACTOR") or default_owner or DEFAULT_USER
    token = env.get("GH_TOKEN") or env.get("ACCESS_TOKEN") or env.get("GITHUB_TOKEN") or None

    commit_source = env.get("COMMIT_SOURCE", "commits").strip().lower()
    if commit_source not in COMMIT_SOURCES:
        print(f"Invalid COMMIT_SOURCE={commit_source!r}. Expected one of {COMMIT_SOURCES}. Using 'commits'.")
        commit_source = "commits"

    theme = env.get("THEME", "dark").strip().lower()
    if theme not in THEMES:
        print(f"Unknown THEME={theme!r}. Using 'dark'.")
        theme = "dark"

    generated_at = None
    generated_raw = env.get("GENERATED_AT")
    if generated_raw:
        try:
            generated_at = date_parser.isoparse(generated_raw)
        except ValueError:
            print(f"Invalid GENERATED_AT={generated_raw!r}. Expected ISO-8601. Using current time.")
        else:
            if generated_at.tzinfo is None:
                generated_at = generated_at.replace(tzinfo=tz.UTC)

    skip = frozenset(s.strip() for s in env.get("SKIP_LANGS", "").split(",") if s.strip())

    return Config(
        login=login,
        token=token,
        readme_path=env.get("README_PATH") or "README.md",
        svg_path=env.get("SVG_PATH") or "languages.svg",
        commit_source=commit_source,
        workers=_env_number(env, "WORKERS", 1, minimum=1),
        visibility=env.get("VISIBILITY") or "all",
        affiliation=env.get("AFFILIATION") or "owner",
        include_forks=_env_flag(env, "INCLUDE_FORKS", True),
        include_archived=_env_flag(env, "INCLUDE_ARCHIVED", True),
        skip_languages=skip,
        top_n=_env_number(env, "TOP_N", 0),
        theme=theme,
        timeout=_env_number(env, "REQUEST_TIMEOUT", 30.0, cast=float, minimum=1),
        generated_at=generated_at,
    )


# ------------------ Data Model ------------------
@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str
    default_branch: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class PageResponse:
    items: List
    next_page: Optional[int] = None
    is_last_page: bool = False


@dataclass
class RepoResult:
    """Outcome of processing one repository: either its totals or a reason."""
    ref: RepositoryRef
    languages: Dict[str, int] = field(default_factory=dict)
    commits: int = 0
    error: Optional[str] = None

    @classmethod
    def success(cls, ref: RepositoryRef, languages: Dict[str, int], commits: int) -> "RepoResult":
        return cls(ref=ref, languages=dict(languages), commits=commits)

    @classmethod
    def failure(cls, ref: RepositoryRef, reason: str) -> "RepoResult":
        return cls(ref=ref, error=reason)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AggregateStats:
    language_bytes: Dict[str, int] = field(default_factory=dict)
    total_commits: int = 0
    processed: int = 0
    skipped: int = 0

    def merge(self, result: RepoResult):
        if not result.ok:
            self.skipped += 1
            return
        for lang, size in result.languages.items():
            self.language_bytes[lang] = self.language_bytes.get(lang, 0) + size
        self.total_commits += result.commits
        self.processed += 1


@dataclass(frozen=True)
class RenderedArtifact:
    svg_markup: str
    summary_text: str


# ------------------ Pagination ------------------
LINK_PART = re.compile(r'<([^>]*)>\s*;\s*rel="([^"]*)"')


def parse_link_header(header: Optional[str]) -> Dict[str, str]:
    """Map each rel of an RFC 8288 Link header to its URL. Unparseable parts are ignored."""
    links: Dict[str, str] = {}
    if not header or not isinstance(header, str):
        return links
    for part in header.split(","):
        m = LINK_PART.search(part)
        if not m:
            continue
        for rel in m.group(2).split():
            links[rel] = m.group(1)
    return links


def page_from_url(url: Optional[str]) -> Optional[int]:
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get("page")
    if not values:
        return None
    try:
        page = int(values[0])
    except ValueError:
        return None
    return page if page >= 0 else None


def last_page_from_link(header: Optional[str]) -> Optional[int]:
    return page_from_url(parse_link_header(header).get("last"))


def paginate(fetch_page: Callable[[int], PageResponse], page_size: int) -> Iterator:
    """Yield every item of a paged listing, starting at page 1.

    Stops on the first short page, or as soon as the response metadata
    marks the page as the last one.
    """
    if page_size < 1:
        raise ValueError("page_size must be positive")
    page = 1
    while True:
        response = fetch_page(page)
        yield from response.items
        if len(response.items) < page_size or response.is_last_page:
            return
        page += 1


# ------------------ GitHub Client ------------------
class GitHubAPIError(RuntimeError):
    def __init__(self, tag: str, status_code: int, body: str = ""):
        super().__init__(f"{tag} failed: {status_code} {body[:300]}")
        self.tag = tag
        self.status_code = status_code


class GitHubClient:
    """Thin REST wrapper. All settings come from the Config it is built with.

    Without an injected session each thread gets its own requests.Session,
    so worker threads never share one.
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.config = config
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": f"{config.login}-profile-stats",
        }
        if config.token:
            self.headers["Authorization"] = f"Bearer {config.token}"
        self._injected = session
        if session is not None:
            session.headers.update(self.headers)
        self._local = threading.local()
        self.request_count: Dict[str, int] = {}
        self._count_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._injected is not None:
            return self._injected
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.headers)
            self._local.session = session
        return session

    def _count(self, tag: str):
        with self._count_lock:
            self.request_count[tag] = self.request_count.get(tag, 0) + 1

    def _get(self, path: str, params: Optional[Dict] = None, tag: str = "get", allow=()) -> requests.Response:
        self._count(tag)
        url = path if path.startswith("http") else f"{API_ROOT}{path}"
        debug(f"{tag}: GET {url} {params or ''}")
        r = self.session.get(url, params=params, timeout=self.config.timeout)
        if r.status_code != 200 and r.status_code not in allow:
            raise GitHubAPIError(tag, r.status_code, r.text)
        return r

    def fetch_page(self, path: str, page: int, page_size: int,
                   params: Optional[Dict] = None, tag: str = "page") -> PageResponse:
        query = dict(params or {})
        query.update({"per_page": page_size, "page": page})
        r = self._get(path, query, tag=tag, allow=(204,))
        if r.status_code == 204:
            return PageResponse(items=[], is_last_page=True)
        items = r.json()
        if not isinstance(items, list):
            raise ValueError(f"{tag}: expected a JSON list, got {type(items).__name__}")
        links = parse_link_header(r.headers.get("Link"))
        return PageResponse(
            items=items,
            next_page=page_from_url(links.get("next")),
            is_last_page=bool(links) and "next" not in links,
        )

    def fetch_all_pages(self, path: str, page_size: int = PAGE_SIZE,
                        params: Optional[Dict] = None, tag: str = "page") -> List:
        return list(paginate(lambda page: self.fetch_page(path, page, page_size, params, tag), page_size))

    def list_repositories(self) -> List[RepositoryRef]:
        cfg = self.config
        if cfg.token:
            path = "/user/repos"
            params = {"visibility": cfg.visibility, "affiliation": cfg.affiliation}
        else:
            path = f"/users/{cfg.login}/repos"
            params = {"type": "owner"}
        refs = []
        for repo in self.fetch_all_pages(path, params=params, tag="repos"):
            if (not isinstance(repo, dict) or not isinstance(repo.get("owner"), dict)
                    or not repo["owner"].get("login") or not repo.get("name")):
                raise ValueError(f"repos: malformed repository entry {repo!r:.200}")
            if repo.get("fork") and not cfg.include_forks:
                debug(f"skip fork {repo.get('full_name')}")
                continue
            if repo.get("archived") and not cfg.include_archived:
                debug(f"skip archived {repo.get('full_name')}")
                continue
            refs.append(RepositoryRef(
                owner=repo["owner"]["login"],
                name=repo["name"],
                default_branch=repo.get("default_branch") or "main",
            ))
        return refs

    def fetch_languages(self, ref: RepositoryRef) -> Dict[str, int]:
        data = self._get(f"/repos/{ref.owner}/{ref.name}/languages", tag="languages").json()
        if not isinstance(data, dict):
            raise ValueError(f"languages for {ref.full_name}: expected a JSON object")
        languages = {}
        for lang, size in data.items():
            if isinstance(size, bool) or not isinstance(size, int) or size < 0:
                raise ValueError(f"languages for {ref.full_name}: bad byte count {size!r} for {lang!r}")
            languages[lang] = size
        return languages

    def count_commits(self, ref: RepositoryRef) -> int:
        if self.config.commit_source == "contributors":
            return self.count_contributions(ref)
        return self.count_branch_commits(ref)

    def count_branch_commits(self, ref: RepositoryRef) -> int:
        """Exact commit count of the default branch from a single per_page=1 request.

        With one commit per page the page number of rel="last" is the total.
        Without that relation the body itself (0 or 1 commits) is the total.
        """
        r = self._get(
            f"/repos/{ref.owner}/{ref.name}/commits",
            {"sha": ref.default_branch, "per_page": 1},
            tag="commits",
            allow=(409,),
        )
        if r.status_code == 409:  # empty repository
            return 0
        last = last_page_from_link(r.headers.get("Link"))
        if last is not None:
            return last
        items = r.json()
        if not isinstance(items, list):
            raise ValueError(f"commits for {ref.full_name}: expected a JSON list")
        return len(items)

    def count_contributions(self, ref: RepositoryRef) -> int:
        login = self.config.login.lower()
        contributors = self.fetch_all_pages(
            f"/repos/{ref.owner}/{ref.name}/contributors", tag="contributors")
        total = 0
        for c in contributors:
            if not isinstance(c, dict):
                raise ValueError(f"contributors for {ref.full_name}: malformed entry {c!r:.100}")
            if (c.get("login") or "").lower() == login:
                total += int(c.get("contributions", 0))
        return total


# ------------------ Aggregation ------------------
REPO_ERRORS = (GitHubAPIError, requests.RequestException, ValueError, KeyError, TypeError)


def resolve_count(client: GitHubClient, ref: RepositoryRef) -> int:
    """Commit count for ref, or 0 when it cannot be determined.

    Standalone non-raising lookup. aggregate() uses the raising
    count_commits instead so a failed count skips the whole repository.
    """
    try:
        return client.count_commits(ref)
    except REPO_ERRORS as e:
        warn(f"commit count for {ref.full_name} unavailable: {e}")
        return 0


def process_repository(client, ref: RepositoryRef, skip_languages: Iterable[str] = ()) -> RepoResult:
    skip = set(skip_languages)
    try:
        languages = {k: v for k, v in client.fetch_languages(ref).items() if k not in skip}
        commits = client.count_commits(ref)
    except REPO_ERRORS as e:
        return RepoResult.failure(ref, f"{type(e).__name__}: {e}")
    debug(f"{ref.full_name}: commits={commits} languages={languages}")
    return RepoResult.success(ref, languages, commits)


def aggregate(client, repositories: Iterable[RepositoryRef], workers: int = 1,
              skip_languages: Iterable[str] = ()) -> AggregateStats:
    repositories = list(repositories)
    skip = frozenset(skip_languages)

    def work(ref):
        return process_repository(client, ref, skip)

    if workers > 1 and len(repositories) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(work, repositories))
    else:
        results = [work(ref) for ref in repositories]

    stats = AggregateStats()
    for result in results:
        if result.ok:
            print(f"Repo {result.ref.full_name}: {format_int(result.commits)} commits, "
                  f"{len(result.languages)} languages")
        else:
            warn(f"skipping {result.ref.full_name}: {result.error}")
        stats.merge(result)
    return stats


# ------------------ Rendering ------------------
LANG_COLORS = {
    "Python": "#3572A5",
    "JavaScript": "#f1e05a",
    "TypeScript": "#3178c6",
    "Java": "#b07219",
    "Kotlin": "#A97BFF",
    "C": "#555555",
    "C++": "#f34b7d",
    "C#": "#178600",
    "Go": "#00ADD8",
    "Rust": "#dea584",
    "Ruby": "#701516",
    "PHP": "#4F5D95",
    "Swift": "#F05138",
    "Dart": "#00B4AB",
    "HTML": "#e34c26",
    "CSS": "#563d7c",
    "SCSS": "#c6538c",
    "Vue": "#41b883",
    "Shell": "#89e051",
    "Dockerfile": "#384d54",
    "Jupyter Notebook": "#DA5B0B",
    "Lua": "#000080",
}
DEFAULT_COLOR = "#8b949e"

THEMES = {
    "dark": {"bg": "#0d1117", "border": "#30363d", "text": "#e6edf3", "muted": "#8b949e", "track": "#21262d"},
    "light": {"bg": "#ffffff", "border": "#d0d7de", "text": "#24292f", "muted": "#656d76", "track": "#eaeef2"},
}

SVG_NS = "http://www.w3.org/2000/svg"
FONT = "-apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif"

CARD_WIDTH = 360
PADDING_X = 20
PADDING_TOP = 70      # title + commit summary
LINE_HEIGHT = 34
FOOTER_SPACE = 12
BAR_MAX_WIDTH = CARD_WIDTH - 2 * PADDING_X
BAR_HEIGHT = 8


@dataclass(frozen=True)
class LanguageRow:
    name: str
    size: int
    percent: float


def format_int(num: int) -> str:
    return f"{num:,}"


def language_rows(language_bytes: Mapping[str, int], top_n: int = 0) -> List[LanguageRow]:
    total = sum(language_bytes.values())
    if total <= 0:
        return []
    # sorted() is stable, so equal sizes keep first-seen order
    ordered = sorted(language_bytes.items(), key=lambda kv: kv[1], reverse=True)
    if top_n > 0:
        ordered = ordered[:top_n]
    return [LanguageRow(name, size, 100.0 * size / total) for name, size in ordered]


def svg_height(rows: int) -> int:
    return PADDING_TOP + rows * LINE_HEIGHT + FOOTER_SPACE


def _el(parent, tag: str, text: Optional[str] = None, **attrs):
    el = etree.SubElement(parent, f"{{{SVG_NS}}}{tag}")
    for key, value in attrs.items():
        el.set(key.rstrip("_").replace("_", "-"), str(value))
    if text is not None:
        el.text = text
    return el


def render_svg(stats: AggregateStats, theme: str = "dark", top_n: int = 0) -> str:
    palette = THEMES[theme]
    rows = language_rows(stats.language_bytes, top_n)
    height = svg_height(len(rows))

    root = etree.Element(f"{{{SVG_NS}}}svg", nsmap={None: SVG_NS})
    root.set("width", str(CARD_WIDTH))
    root.set("height", str(height))
    root.set("viewBox", f"0 0 {CARD_WIDTH} {height}")
    _el(root, "style", text=(
        f"text{{font-family:{FONT};fill:{palette['text']}}}"
        f".title{{font-size:16px;font-weight:600}}"
        f".summary{{font-size:13px;fill:{palette['muted']}}}"
        f".label{{font-size:12px}}"
        f".pct{{font-size:12px;fill:{palette['muted']}}}"
    ))
    _el(root, "rect", x="0.5", y="0.5", width=CARD_WIDTH - 1, height=height - 1, rx=6,
        fill=palette["bg"], stroke=palette["border"])
    _el(root, "text", text="Most Used Languages", x=PADDING_X, y=30, class_="title")
    _el(root, "text", text=f"Total commits: {format_int(stats.total_commits)}",
        x=PADDING_X, y=52, class_="summary")

    for i, row in enumerate(rows):
        base = PADDING_TOP + i * LINE_HEIGHT
        bar_width = row.percent / 100.0 * BAR_MAX_WIDTH
        group = _el(root, "g", transform=f"translate({PADDING_X},{base})")
        _el(group, "text", text=row.name, x=0, y=12, class_="label")
        _el(group, "text", text=f"{row.percent:.1f}%", x=BAR_MAX_WIDTH, y=12,
            text_anchor="end", class_="pct")
        _el(group, "rect", x=0, y=18, width=BAR_MAX_WIDTH, height=BAR_HEIGHT, rx=4, fill=palette["track"])
        _el(group, "rect", x=0, y=18, width=f"{bar_width:.2f}", height=BAR_HEIGHT, rx=4,
            fill=LANG_COLORS.get(row.name, DEFAULT_COLOR))

    return etree.tostring(root, encoding="unicode", pretty_print=True)


def render_summary(stats: AggregateStats, generated_at: datetime.datetime,
                   top_n: int = 0, svg_href: str = "languages.svg") -> str:
    lines = [
        "",
        f'<img src="{svg_href}" alt="Most used languages" />',
        "",
        f"- **Total commits**: {format_int(stats.total_commits)}",
        f"- **Repositories counted**: {format_int(stats.processed)}",
    ]
    rows = language_rows(stats.language_bytes, top_n)
    if rows:
        lines.append("- **Languages**:")
        lines.extend(f"  - {row.name}: {row.percent:.1f}%" for row in rows)
    lines += ["", f"> Last updated: {generated_at.isoformat(timespec='seconds')}", ""]
    return "\n".join(lines)


def render(stats: AggregateStats, generated_at: datetime.datetime, theme: str = "dark",
           top_n: int = 0, svg_href: str = "languages.svg") -> RenderedArtifact:
    return RenderedArtifact(
        svg_markup=render_svg(stats, theme, top_n),
        summary_text=render_summary(stats, generated_at, top_n, svg_href),
    )


# ------------------ README Update ------------------
def update_section(document: str, start_marker: str, end_marker: str, new_content: str) -> str:
    block = f"{start_marker}{new_content}{end_marker}"
    start = document.find(start_marker)
    if start != -1:
        end = document.find(end_marker, start + len(start_marker))
        if end != -1:
            # shortest span: the last start marker before that end marker
            start = document.rfind(start_marker, start, end)
            return document[:start] + block + document[end + len(end_marker):]
    if not document:
        return block + "\n"
    return document + "\n" + block + "\n"


def relative_href(svg_path: str, readme_path: str) -> str:
    readme_dir = os.path.dirname(os.path.abspath(readme_path))
    return os.path.relpath(os.path.abspath(svg_path), readme_dir).replace(os.sep, "/")


def write_outputs(config: Config, artifact: RenderedArtifact):
    if os.path.exists(config.readme_path):
        with open(config.readme_path, "r", encoding="utf-8") as f:
            readme = f.read()
    else:
        warn(f"{config.readme_path} not found; creating it.")
        readme = ""
    updated = update_section(readme, START_MARKER, END_MARKER, artifact.summary_text)

    svg_dir = os.path.dirname(config.svg_path)
    if svg_dir:
        os.makedirs(svg_dir, exist_ok=True)
    with open(config.svg_path, "w", encoding="utf-8") as f:
        f.write(artifact.svg_markup)
    with open(config.readme_path, "w", encoding="utf-8") as f:
        f.write(updated)


# ------------------ Main ------------------
def main(env: Optional[Mapping[str, str]] = None) -> int:
    config = load_config(env)
    print(f"Collecting stats for {config.login}...")
    t0 = time.time()
    client = GitHubClient(config)

    try:
        repos = client.list_repositories()
    except REPO_ERRORS as e:
        print(f"ERROR: cannot list repositories: {e}", file=sys.stderr)
        return 1
    print(f"Found {len(repos)} repositories.")

    stats = aggregate(client, repos, workers=config.workers, skip_languages=config.skip_languages)
    generated_at = config.generated_at or datetime.datetime.now(tz.UTC)
    artifact = render(
        stats,
        generated_at,
        theme=config.theme,
        top_n=config.top_n,
        svg_href=relative_href(config.svg_path, config.readme_path),
    )

    try:
        write_outputs(config, artifact)
    except OSError as e:
        print(f"ERROR: cannot write outputs: {e}", file=sys.stderr)
        return 1

    print(f"Commits: {format_int(stats.total_commits)} across {stats.processed} repos "
          f"({stats.skipped} skipped), {len(stats.language_bytes)} languages")
    print("Done in {:.2f}s".format(time.time() - t0))
    print("REST request counts:", client.request_count)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
