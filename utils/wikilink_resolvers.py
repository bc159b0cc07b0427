import asyncio
import html
import inspect
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import jinja2
import markdown as markdown_lib
from markupsafe import Markup
from mkdocs.utils.meta import get_data

log = logging.getLogger("mkdocs.hooks")

# ---------------------------------------------------------------------------
# Wiki-link output resolvers
# ---------------------------------------------------------------------------
#
# Each resolver receives an already-resolved WikilinkMeta, the page being
# rendered and the shared RenderContext, and returns the HTML that replaces
# the wiki-link:
#
#   [[page]]          -> resolve_link         <a href=".." class="wikilink">
#   [[missing]]       -> resolve_link         <span class="dead-wikilink">
#   ![[page]]         -> resolve_embed        rendered content of the target
#   ![[diagram.png]]  -> resolve_image_embed  <img src=".." alt=".." />
#
# Which resolver runs is decided by link.resolving_fn_name through a
# ResolverRegistry.  Parsing wiki-links and building the page index happen
# upstream and are not handled here.
# ---------------------------------------------------------------------------

DEFAULT_IMAGES_FOLDER = "/images/"

# Invokes the embed layout; the rendered embed is passed in as `content`.
# Always Jinja syntax, whatever language the embedded page uses, so a layout
# for a page in another language will not be picked up by this directive.
LAYOUT_DIRECTIVE = '{{% extends "{layout}" %}}'

# Trailing extension: the final "." and everything after it in the last segment
_EXTENSION_RE = re.compile(r"\.[^/.]+$")

# Languages rendered by Jinja alone, with no conversion afterwards
JINJA_LANGUAGES = {"jinja2", "jinja", "j2", "html", "njk"}


class WikilinkResolutionError(Exception):
    """Base class for errors raised while turning a wiki-link into HTML."""


class UnknownResolverError(WikilinkResolutionError, KeyError):
    """A link asked for a resolving function that was never registered."""


class UnsupportedTemplateLanguage(WikilinkResolutionError, ValueError):
    """The compiler has no way to render the requested template language."""


# ---------------------------------------------------------------------------
# Link data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoLink:
    """The link should not be rendered as a hyperlink at all."""


@dataclass(frozen=True)
class Resolved:
    """The link points at `url`."""

    url: str


NO_LINK = NoLink()


def href_from_value(value):
    """Map the raw href of a link record (False or a URL) to NoLink/Resolved."""
    if value is False:
        return NO_LINK
    if isinstance(value, (NoLink, Resolved)):
        return value
    if isinstance(value, str):
        return Resolved(value)
    raise TypeError(f"Wiki-link href must be False or a string, got {value!r}")


@dataclass(frozen=True)
class WikilinkMeta:
    """One wiki-link occurrence, as resolved by the upstream link index."""

    name: str
    title: Optional[str] = None
    href: object = NO_LINK
    anchor: Optional[str] = None
    exists: bool = False
    page: Optional[object] = None
    link: str = ""
    resolving_fn_name: str = "default"

    @classmethod
    def from_mapping(cls, data):
        """Build from a link record using either camelCase or snake_case keys."""
        return cls(
            name=data["name"],
            title=data.get("title"),
            href=href_from_value(data.get("href", False)),
            anchor=data.get("anchor"),
            exists=bool(data.get("exists", False)),
            page=data.get("page"),
            link=data.get("link", ""),
            resolving_fn_name=data.get(
                "resolvingFnName", data.get("resolving_fn_name", "default")
            ),
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_OPTION_ALIASES = {
    "stubUrl": "stub_url",
    "imagesFolder": "images_folder",
    "layoutKey": "layout_key",
    "layoutTemplateLangKey": "layout_template_lang_key",
    "defaultLayout": "default_layout",
    "defaultLayoutLang": "default_layout_lang",
}


@dataclass(frozen=True)
class InterlinkerOptions:
    """Read-only options shared by every resolver call of a build."""

    stub_url: str = "/stubs"
    images_folder: str = DEFAULT_IMAGES_FOLDER
    layout_key: str = "embedLayout"
    layout_template_lang_key: str = "embedLayoutLanguage"
    default_layout: Optional[str] = None
    default_layout_lang: Optional[str] = None

    def __post_init__(self):
        if not self.images_folder:
            object.__setattr__(self, "images_folder", DEFAULT_IMAGES_FOLDER)

    @classmethod
    def from_mapping(cls, config):
        """
        Build options from a plugin config mapping.

        Accepts the camelCase names used in site config (``stubUrl``) as
        well as the field names (``stub_url``).  Unknown keys are logged
        and ignored.
        """
        fields = set(cls.__dataclass_fields__)
        kwargs = {}
        for key, value in (config or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in fields:
                log.warning(f"[wiki-link] Ignoring unknown interlinker option: {key}")
                continue
            kwargs[name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class RenderContext:
    """
    Shared services handle, one per build.

    ``template_config`` and ``extension_map`` are handed to the template
    compiler; embeds are skipped while either is missing.  When no
    ``compiler`` is supplied, a JinjaTemplateCompiler is built from them.
    """

    opts: InterlinkerOptions = field(default_factory=InterlinkerOptions)
    template_config: Optional[object] = None
    extension_map: Optional[dict] = None
    compiler: Optional[object] = None

    def __post_init__(self):
        if self.compiler is None and self.template_config is not None:
            object.__setattr__(
                self,
                "compiler",
                JinjaTemplateCompiler(self.template_config, self.extension_map),
            )


# ---------------------------------------------------------------------------
# Template compilation
# ---------------------------------------------------------------------------


class TemplateCompiler(Protocol):
    async def compile(self, source, language):
        """Compile ``source`` written in ``language`` into a renderable."""

    async def render(self, renderable, data):
        """Render a compiled template with the ``data`` mapping."""


def _markdown_to_html(text):
    return markdown_lib.markdown(text)


DEFAULT_EXTENSION_MAP = {"md": _markdown_to_html}


@dataclass(frozen=True)
class _CompiledTemplate:
    template: jinja2.Template
    convert: Optional[object] = None


class JinjaTemplateCompiler:
    """
    Template compiler backed by Jinja2.

    Every language is rendered by Jinja first; languages listed in
    ``extension_map`` are then passed through their converter (``md`` turns
    the rendered Markdown into HTML).
    """

    def __init__(self, template_config, extension_map=None):
        if isinstance(template_config, jinja2.BaseLoader):
            template_config = jinja2.Environment(
                loader=template_config, enable_async=True
            )
        self.environment = template_config
        # Caller converters are added to the defaults and override them per language
        self.extension_map = {**DEFAULT_EXTENSION_MAP, **(extension_map or {})}

    async def compile(self, source, language):
        if language in self.extension_map:
            convert = self.extension_map[language]
        elif language in JINJA_LANGUAGES:
            convert = None
        else:
            raise UnsupportedTemplateLanguage(
                f"No template compiler for language {language!r}"
            )
        return _CompiledTemplate(self.environment.from_string(source), convert)

    async def render(self, renderable, data):
        # Jinja builds its context with keyword unpacking, and only string
        # keys can be named in a template anyway (front matter like `2020: x`)
        context = {key: value for key, value in data.items() if isinstance(key, str)}
        if self.environment.is_async:
            output = await renderable.template.render_async(context)
        else:
            output = renderable.template.render(context)
        if renderable.convert is not None:
            output = renderable.convert(output)
        return output


# ---------------------------------------------------------------------------
# Layout lookup
# ---------------------------------------------------------------------------


def resolve_layout(page_data, opts):
    """Layout named in the page's data, else the configured default (may be None)."""
    if opts.layout_key in page_data:
        return page_data[opts.layout_key]
    return opts.default_layout


def resolve_layout_language(page_data, opts, template_syntax):
    """
    Pick the language the embed is compiled in.

    Precedence: the page's own ``layout_template_lang_key`` field, then the
    configured ``default_layout_lang``, then the page's template syntax when
    no default is configured.
    """
    if opts.layout_template_lang_key in page_data:
        return page_data[opts.layout_template_lang_key]
    if opts.default_layout_lang is None:
        return template_syntax
    return opts.default_layout_lang


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def resolve_link(link, current_page, ctx):
    """Turn a wiki-link into an anchor, a dead-link span, or its literal text."""
    text = html.escape(link.title if link.title is not None else link.name)

    if isinstance(link.href, NoLink):
        return link.link

    href = link.href.url
    if link.anchor:
        href = f"{href}#{link.anchor}"

    if href.startswith(ctx.opts.stub_url):
        return f'<span title="{text} was not created yet" class="dead-wikilink">{text}</span>'
    return f'<a href="{href}" class="wikilink">{text}</a>'


async def resolve_embed(link, current_page, ctx):
    """
    Render the target page's content in place of the wiki-link.

    Returns None when there is nothing to embed (missing target, or no
    template services configured).  Read, compile and render errors are
    not caught.
    """
    if not link.exists or ctx.template_config is None or ctx.extension_map is None:
        return None

    page = link.page
    source = await page.template.read()
    data = dict(page.data)

    layout = resolve_layout(data, ctx.opts)
    language = resolve_layout_language(data, ctx.opts, page.template_syntax)
    log.debug(f"[wiki-link] Embedding {link.name} as {language} (layout: {layout})")

    content_tpl = await ctx.compiler.compile(source, language)
    content = await ctx.compiler.render(content_tpl, data)

    if layout is None:
        return content

    layout_tpl = await ctx.compiler.compile(
        LAYOUT_DIRECTIVE.format(layout=layout), language
    )
    return await ctx.compiler.render(layout_tpl, {"content": Markup(content), **data})


async def resolve_image_embed(link, current_page, ctx):
    """Turn an image wiki-link into an <img> tag."""
    # A name with a path is used from the site root; a bare filename goes
    # under the images folder.
    if "/" in link.name:
        image_path = f"/{link.name}"
    else:
        image_path = f"{ctx.opts.images_folder or DEFAULT_IMAGES_FOLDER}{link.name}"

    filename = _EXTENSION_RE.sub("", link.name.split("/")[-1])
    alt_text = html.escape(link.title or filename)

    return f'<img src="{image_path}" alt="{alt_text}" />'


# ---------------------------------------------------------------------------
# Resolver registry
# ---------------------------------------------------------------------------

DEFAULT_RESOLVING_FNS = {
    "default": resolve_link,
    "default-embed": resolve_embed,
    "default-image": resolve_image_embed,
}


class ResolverRegistry:
    """Named resolving functions; each link picks one by resolving_fn_name."""

    def __init__(self, resolving_fns=None):
        self.resolving_fns = dict(DEFAULT_RESOLVING_FNS)
        self.resolving_fns.update(resolving_fns or {})

    def __contains__(self, name):
        return name in self.resolving_fns

    def register(self, name, fn):
        if name in self.resolving_fns:
            log.debug(f"[wiki-link] Replacing resolving function {name!r}")
        self.resolving_fns[name] = fn

    def get(self, name):
        try:
            return self.resolving_fns[name]
        except KeyError:
            raise UnknownResolverError(
                f"Unable to find resolving function {name!r}"
            ) from None

    async def resolve(self, link, current_page, ctx):
        """Run the link's resolving function, awaiting it if it is async."""
        fn = self.get(link.resolving_fn_name)
        result = fn(link, current_page, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


# ---------------------------------------------------------------------------
# MkDocs page adapter
# ---------------------------------------------------------------------------


class MkDocsTemplateSource:
    """Reads a MkDocs source file without its front matter."""

    def __init__(self, file):
        self.file = file

    async def read(self):
        path = Path(self.file.abs_src_path)
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        body, _meta = get_data(text)
        return body


class MkDocsEmbedPage:
    """Exposes a mkdocs.structure.pages.Page as an embed target."""

    template_syntax = "md"

    def __init__(self, page):
        self.page = page
        self.data = dict(page.meta or {})
        self.template = MkDocsTemplateSource(page.file)
