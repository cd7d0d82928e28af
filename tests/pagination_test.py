"""Paged listing: stopping rules, Link header parsing and repository listing."""
import threading

import pytest

from update_stats import (
    Config,
    GitHubClient,
    PageResponse,
    RepositoryRef,
    last_page_from_link,
    page_from_url,
    paginate,
    parse_link_header,
)

GH_LINK = (
    '<https://api.github.com/user/repos?per_page=100&page=2>; rel="next", '
    '<https://api.github.com/user/repos?per_page=100&page=7>; rel="last"'
)


def synthetic_resource(total, page_size, with_metadata):
    items = list(range(total))
    requested = []

    def fetch_page(page):
        requested.append(page)
        chunk = items[(page - 1) * page_size: page * page_size]
        is_last = with_metadata and page * page_size >= total
        return PageResponse(items=chunk, is_last_page=is_last)

    return items, requested, fetch_page


@pytest.mark.parametrize("total,page_size,expected_requests", [
    (0, 10, 1),
    (7, 10, 1),
    (10, 10, 2),
    (23, 10, 3),
    (30, 10, 4),
    (1, 1, 2),
])
def test_short_page_termination(total, page_size, expected_requests):
    items, requested, fetch_page = synthetic_resource(total, page_size, with_metadata=False)
    assert list(paginate(fetch_page, page_size)) == items
    assert requested == list(range(1, expected_requests + 1))


@pytest.mark.parametrize("total,page_size,expected_requests", [
    (10, 10, 1),
    (30, 10, 3),
    (23, 10, 3),
])
def test_last_page_metadata_saves_a_request(total, page_size, expected_requests):
    items, requested, fetch_page = synthetic_resource(total, page_size, with_metadata=True)
    assert list(paginate(fetch_page, page_size)) == items
    assert len(requested) == expected_requests


def test_paginate_rejects_bad_page_size():
    with pytest.raises(ValueError):
        list(paginate(lambda page: PageResponse(items=[]), 0))


def test_parse_link_header():
    links = parse_link_header(GH_LINK)
    assert set(links) == {"next", "last"}
    assert links["last"].endswith("page=7")
    assert parse_link_header(None) == {}
    assert parse_link_header("") == {}
    assert parse_link_header("garbage, more garbage") == {}


@pytest.mark.parametrize("header,expected", [
    (GH_LINK, 7),
    ('<https://api.github.com/repos/o/r/commits?sha=main&per_page=1&page=1234>; rel="last"', 1234),
    ('<https://api.github.com/x?page=2>; rel="next"', None),
    ('<https://api.github.com/x?per_page=1>; rel="last"', None),
    ('<https://api.github.com/x?page=abc>; rel="last"', None),
    ("rel=last; page=5", None),
    ("", None),
    (None, None),
])
def test_last_page_from_link(header, expected):
    assert last_page_from_link(header) == expected


def test_page_from_url():
    assert page_from_url("https://api.github.com/x?a=1&page=3") == 3
    assert page_from_url("https://api.github.com/x?page=-1") is None
    assert page_from_url(None) is None


def test_fetch_page_reads_link_metadata(make_client, fake_resp):
    client, session = make_client({
        "/things": fake_resp([1, 2], headers={"Link": GH_LINK}),
    })
    page = client.fetch_page("/things", 1, 2, {"q": "x"}, tag="things")
    assert page.items == [1, 2]
    assert page.next_page == 2
    assert page.is_last_page is False
    assert session.calls == [("/things", {"q": "x", "per_page": 2, "page": 1})]
    assert client.request_count == {"things": 1}


def test_fetch_page_no_content_and_malformed(make_client, fake_resp):
    client, _ = make_client({
        "/empty": fake_resp(None, status_code=204),
        "/object": fake_resp({"message": "weird"}),
    })
    assert client.fetch_page("/empty", 1, 100).items == []
    with pytest.raises(ValueError):
        client.fetch_page("/object", 1, 100)


def test_fetch_all_pages_follows_pages(make_client, fake_resp):
    def pages(params):
        if params["page"] == 1:
            return fake_resp(list(range(100)))
        return fake_resp(list(range(100, 130)))

    client, session = make_client({"/big": pages})
    assert client.fetch_all_pages("/big") == list(range(130))
    assert [p["page"] for _, p in session.calls] == [1, 2]


def repo(name, fork=False, archived=False, branch="main"):
    return {
        "name": name,
        "full_name": f"octo/{name}",
        "owner": {"login": "octo"},
        "fork": fork,
        "archived": archived,
        "default_branch": branch,
    }


def test_list_repositories_public(make_client, fake_resp):
    client, session = make_client({
        "/users/octo/repos": fake_resp([repo("a"), repo("b", fork=True, branch="trunk")]),
    })
    refs = client.list_repositories()
    assert refs == [RepositoryRef("octo", "a", "main"), RepositoryRef("octo", "b", "trunk")]
    assert session.calls[0][1]["type"] == "owner"
    assert "Authorization" not in session.headers


def test_list_repositories_authenticated_with_filters(make_client, fake_resp):
    client, session = make_client(
        {"/user/repos": fake_resp([repo("a"), repo("b", fork=True), repo("c", archived=True)])},
        token="t0k3n",
        include_forks=False,
        include_archived=False,
        visibility="public",
    )
    refs = client.list_repositories()
    assert [r.name for r in refs] == ["a"]
    assert session.calls[0][1]["visibility"] == "public"
    assert session.calls[0][1]["affiliation"] == "owner"
    assert session.headers["Authorization"] == "Bearer t0k3n"
    assert session.headers["User-Agent"] == "octo-profile-stats"


@pytest.mark.parametrize("entry", [
    {"name": "x", "owner": None},
    {"name": "x"},
    {"owner": {"login": "octo"}},
    "not-a-repo",
    None,
])
def test_list_repositories_rejects_malformed_entries(make_client, fake_resp, entry):
    client, _ = make_client({"/users/octo/repos": fake_resp([repo("a"), entry])})
    with pytest.raises(ValueError):
        client.list_repositories()


def test_sessions_are_per_thread():
    client = GitHubClient(Config(login="octo", token="t0k3n"))
    main_session = client.session
    assert client.session is main_session

    seen = []
    worker = threading.Thread(target=lambda: seen.append(client.session))
    worker.start()
    worker.join()

    assert seen[0] is not main_session
    assert seen[0].headers["Authorization"] == "Bearer t0k3n"
    assert seen[0].headers["User-Agent"] == "octo-profile-stats"
