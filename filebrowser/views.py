"""Breadcrumbs, the listing view model and page rendering."""

from dataclasses import dataclass
from typing import List, Sequence
from urllib.parse import quote

from flask import render_template
from jinja2 import TemplateError
from markupsafe import Markup

from .config import Settings
from .storage import DirectoryEntry, FileBrowserError

ROOT_URL = "/"
LISTING_TEMPLATE = "index.html"


class TemplateRenderError(FileBrowserError):
    status_code = 500
    message = "Error rendering page"


@dataclass(frozen=True)
class Breadcrumb:
    label: str
    url: str


@dataclass(frozen=True)
class ViewModel:
    current_path: str
    parent_url: str
    entries: Sequence[DirectoryEntry]
    breadcrumbs: Sequence[Breadcrumb]
    title: str
    # Trusted operator markup; Jinja2 emits Markup values unescaped.
    extra_headers: Markup
    upload_enabled: bool
    git_commit: str
    build_date: str

    @property
    def is_root(self) -> bool:
        return self.current_path == ROOT_URL


def build_breadcrumbs(url_path: str) -> List[Breadcrumb]:
    crumbs = [Breadcrumb(label="/", url=ROOT_URL)]
    clean = url_path.strip("/")
    if not clean:
        return crumbs

    current = ROOT_URL
    for segment in clean.split("/"):
        current += quote(segment, safe="") + "/"
        crumbs.append(Breadcrumb(label=f"{segment}/", url=current))
    return crumbs


def parent_url(breadcrumbs: Sequence[Breadcrumb]) -> str:
    if len(breadcrumbs) < 2:
        return ROOT_URL
    return breadcrumbs[-2].url


def build_view_model(url_path: str, entries: Sequence[DirectoryEntry], settings: Settings) -> ViewModel:
    breadcrumbs = build_breadcrumbs(url_path)
    return ViewModel(
        current_path=url_path,
        parent_url=parent_url(breadcrumbs),
        entries=list(entries),
        breadcrumbs=breadcrumbs,
        title=settings.title,
        extra_headers=Markup(settings.extra_headers),
        upload_enabled=settings.enable_upload,
        git_commit=settings.git_commit,
        build_date=settings.build_date,
    )


def render_listing(view: ViewModel) -> bytes:
    """Render *view* with the listing template; requires an app context."""

    try:
        page = render_template(LISTING_TEMPLATE, view=view)
    except TemplateError as error:
        raise TemplateRenderError() from error
    return page.encode("utf-8", "surrogateescape")
