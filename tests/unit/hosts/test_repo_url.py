import pytest

from devplane.hosts.repo_url import RepoUrl, parse_repo_url, trim_repo_url


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/acme/app.git", RepoUrl("github.com", "acme", "app")),
        ("https://GitHub.com/acme/app", RepoUrl("github.com", "acme", "app")),
        ("https://gitlab.com/group/sub/app.git", RepoUrl("gitlab.com", "group/sub", "app")),
        ("https://bb.example.com/scm/prj/app.git", RepoUrl("bb.example.com", "prj", "app")),
        ("https://git.local:8443/acme/app", RepoUrl("git.local:8443", "acme", "app")),
        ("https://github.com/acme", None),
        ("not a url", None),
        ("", None),
    ],
)
def test_parse_repo_url(url, expected) -> None:
    assert parse_repo_url(url) == expected


def test_trim_repo_url() -> None:
    assert trim_repo_url("https://github.com/acme/app.git") == "https://github.com/acme/app"
    assert trim_repo_url(" https://github.com/acme/app/ ") == "https://github.com/acme/app"
    assert trim_repo_url(None) == ""
