# probegate/tools/web_inspect.py
"""
Web inspection tools.

    redirect      redirect chain, one hop at a time (max 15 hops)
    metadata      title / description / OpenGraph / canonical / favicon
    techdetect    header and HTML signature matching
    robots        robots.txt and the first Sitemap it names
    urlstatus     status, timing, server; VirusTotal stats when keyed
    http-latency  time to a complete response

Every URL contacted here, including redirect targets and sitemap URLs taken
from remote content, goes back through the SSRF policy first.
"""

from __future__ import annotations

import base64
import logging
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin, urlsplit

from probegate.errors import GatewayError, UpstreamFailure, UpstreamTimeout, ValidationError
from probegate.executor import REDIRECT_STATUSES, ProbeContext

logger = logging.getLogger(__name__)

TIMEOUT = 10
HOP_TIMEOUT = 8
MAX_REDIRECT_HOPS = 15
PAGE_LIMIT = 5 * 1024 * 1024
ROBOTS_LIMIT = 512 * 1024
SITEMAP_LIMIT = 2 * 1024 * 1024
SITEMAP_SAMPLE = 20

VIRUSTOTAL_URL = "https://www.virustotal.com/api/v3/urls/{}"


# ═══════════════════════════════════════════════════════════════
# REDIRECT CHAIN
# ═══════════════════════════════════════════════════════════════

async def run_redirect_trace(ctx: ProbeContext) -> Dict[str, Any]:
    url = ctx.target.value
    validator = ctx.executor.validator

    chain: List[Dict[str, Any]] = []
    blocked: Optional[str] = None
    current = url

    while True:
        resp = await ctx.executor.fetch(
            current, timeout=HOP_TIMEOUT, follow_redirects=False, max_bytes=64 * 1024,
        )
        chain.append(resp.hops[0])

        location = resp.headers.get("location")
        if resp.status_code not in REDIRECT_STATUSES or not location:
            break
        if len(chain) > MAX_REDIRECT_HOPS:
            break
        try:
            current = validator.validate_url(urljoin(current, location), require_scheme=True).value
        except ValidationError as e:
            blocked = e.public_message
            break

    result: Dict[str, Any] = {
        "originalUrl": url,
        "finalUrl": chain[-1]["url"],
        "hops": len(chain) - 1,
        "chain": chain,
    }
    if blocked:
        result["blocked"] = blocked
    return result


# ═══════════════════════════════════════════════════════════════
# METADATA
# ═══════════════════════════════════════════════════════════════

def _meta(attr: str, value: str) -> re.Pattern:
    return re.compile(
        rf"<meta[^>]*{attr}=[\"']{re.escape(value)}[\"'][^>]*content=[\"'](.*?)[\"']",
        re.IGNORECASE | re.DOTALL,
    )


METADATA_PATTERNS = {
    "title": re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL),
    "description": _meta("name", "description"),
    "ogTitle": _meta("property", "og:title"),
    "ogDescription": _meta("property", "og:description"),
    "ogImage": _meta("property", "og:image"),
    "ogType": _meta("property", "og:type"),
    "twitterCard": _meta("name", "twitter:card"),
    "canonical": re.compile(r"<link[^>]*rel=[\"']canonical[\"'][^>]*href=[\"'](.*?)[\"']", re.IGNORECASE | re.DOTALL),
    "favicon": re.compile(r"<link[^>]*rel=[\"'](?:icon|shortcut icon)[\"'][^>]*href=[\"'](.*?)[\"']", re.IGNORECASE | re.DOTALL),
    "robots": _meta("name", "robots"),
    "generator": _meta("name", "generator"),
    "language": re.compile(r"<html[^>]*lang=[\"'](.*?)[\"']", re.IGNORECASE | re.DOTALL),
    "charset": re.compile(r"<meta[^>]*charset=[\"']?([\w-]+)", re.IGNORECASE),
}


def extract_metadata(html: str) -> Dict[str, Optional[str]]:
    result: Dict[str, Optional[str]] = {}
    for key, pattern in METADATA_PATTERNS.items():
        match = pattern.search(html)
        value = match.group(1).strip() if match else None
        result[key] = value or None
    return result


async def _fetch_page(ctx: ProbeContext):
    resp = await ctx.executor.fetch(ctx.target.value, timeout=TIMEOUT, max_bytes=PAGE_LIMIT)
    if resp.status_code >= 400:
        raise UpstreamFailure(f"site returned HTTP {resp.status_code}")
    return resp


async def run_metadata(ctx: ProbeContext) -> Dict[str, Any]:
    resp = await _fetch_page(ctx)
    result: Dict[str, Any] = {"url": ctx.target.value, "finalUrl": resp.final_url}
    result.update(extract_metadata(resp.text))
    return result


# ═══════════════════════════════════════════════════════════════
# TECHNOLOGY DETECTION
# ═══════════════════════════════════════════════════════════════

# header -> {substring: technology}; "" matches any value
HEADER_SIGNATURES = {
    "x-powered-by": {"express": "Express.js", "php": "PHP", "asp.net": "ASP.NET", "next.js": "Next.js"},
    "server": {
        "nginx": "Nginx", "apache": "Apache", "cloudflare": "Cloudflare",
        "iis": "Microsoft IIS", "vercel": "Vercel", "netlify": "Netlify",
    },
    "x-vercel-id": {"": "Vercel"},
    "x-nf-request-id": {"": "Netlify"},
}

HTML_SIGNATURES = [
    (re.compile(r"wp-content|wordpress", re.I), "WordPress", "CMS"),
    (re.compile(r"react", re.I), "React", "JS Framework"),
    (re.compile(r"__next", re.I), "Next.js", "JS Framework"),
    (re.compile(r"__nuxt|nuxt", re.I), "Nuxt.js", "JS Framework"),
    (re.compile(r"vue\.js|v-bind|v-on", re.I), "Vue.js", "JS Framework"),
    (re.compile(r"angular|ng-version", re.I), "Angular", "JS Framework"),
    (re.compile(r"svelte", re.I), "Svelte", "JS Framework"),
    (re.compile(r"jquery", re.I), "jQuery", "JS Library"),
    (re.compile(r"bootstrap", re.I), "Bootstrap", "CSS Framework"),
    (re.compile(r"tailwindcss|tailwind", re.I), "Tailwind CSS", "CSS Framework"),
    (re.compile(r"cloudflare", re.I), "Cloudflare", "CDN/Security"),
    (re.compile(r"google-analytics|gtag|ga\.js", re.I), "Google Analytics", "Analytics"),
    (re.compile(r"googletagmanager", re.I), "Google Tag Manager", "Analytics"),
    (re.compile(r"hotjar", re.I), "Hotjar", "Analytics"),
    (re.compile(r"shopify", re.I), "Shopify", "E-commerce"),
    (re.compile(r"wix\.com", re.I), "Wix", "Website Builder"),
    (re.compile(r"squarespace", re.I), "Squarespace", "Website Builder"),
    (re.compile(r"stripe", re.I), "Stripe", "Payment"),
    (re.compile(r"recaptcha", re.I), "reCAPTCHA", "Security"),
    (re.compile(r"cloudflare-static", re.I), "Cloudflare Pages", "Hosting"),
]


def detect_technologies(headers: Mapping[str, str], html: str) -> List[Dict[str, str]]:
    """Match signatures; the first evidence found for a technology wins."""
    detected: Dict[str, Dict[str, str]] = {}

    for header, signatures in HEADER_SIGNATURES.items():
        raw = headers.get(header) or ""
        value = raw.lower()
        if not value:
            continue
        for needle, name in signatures.items():
            if (needle == "" or needle in value) and name not in detected:
                detected[name] = {"name": name, "category": "Server/Hosting", "evidence": f"{header}: {raw}"}

    for pattern, name, category in HTML_SIGNATURES:
        if name not in detected and pattern.search(html):
            detected[name] = {"name": name, "category": category, "evidence": "HTML content"}

    return list(detected.values())


async def run_tech_detect(ctx: ProbeContext) -> Dict[str, Any]:
    resp = await _fetch_page(ctx)
    technologies = detect_technologies(resp.headers, resp.text)
    return {"url": ctx.target.value, "technologies": technologies, "count": len(technologies)}


# ═══════════════════════════════════════════════════════════════
# ROBOTS.TXT & SITEMAP
# ═══════════════════════════════════════════════════════════════

SITEMAP_RE = re.compile(r"^\s*Sitemap:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
LOC_RE = re.compile(r"<loc>\s*(.*?)\s*</loc>", re.IGNORECASE | re.DOTALL)
DIRECTIVE_RE = re.compile(r"^\s*(User-agent|Allow|Disallow|Crawl-delay)\s*:", re.IGNORECASE | re.MULTILINE)


def summarize_robots(text: str) -> Dict[str, Any]:
    counts: Dict[str, int] = {}
    for match in DIRECTIVE_RE.finditer(text):
        key = match.group(1).lower()
        counts[key] = counts.get(key, 0) + 1
    sitemaps = SITEMAP_RE.findall(text)
    return {
        "userAgents": counts.get("user-agent", 0),
        "allowRules": counts.get("allow", 0),
        "disallowRules": counts.get("disallow", 0),
        "sitemaps": sitemaps,
    }


def sitemap_urls(xml_text: str) -> List[str]:
    return [loc for loc in LOC_RE.findall(xml_text) if loc]


async def run_robots(ctx: ProbeContext) -> Dict[str, Any]:
    parts = urlsplit(ctx.target.value)
    base_url = f"{parts.scheme}://{parts.netloc}"
    ex = ctx.executor

    robots_txt = None
    summary = None
    sitemap = None

    resp = await ex.fetch(f"{base_url}/robots.txt", timeout=5, max_bytes=ROBOTS_LIMIT)
    if resp.status_code == 200:
        robots_txt = resp.text
        summary = summarize_robots(robots_txt)

    if summary and summary["sitemaps"]:
        sitemap_url = summary["sitemaps"][0]
        try:
            checked = ex.validator.validate_url(urljoin(base_url + "/", sitemap_url), require_scheme=True)
            sm = await ex.fetch(checked.value, timeout=5, max_bytes=SITEMAP_LIMIT)
            if sm.status_code == 200:
                urls = sitemap_urls(sm.text)
                sitemap = {"url": checked.value, "urlCount": len(urls), "sampleUrls": urls[:SITEMAP_SAMPLE]}
        except GatewayError as e:
            # Sitemap is optional; its failure never fails the robots result
            logger.debug("Sitemap fetch skipped: %s", e.message)
            sitemap = {"url": sitemap_url, "error": e.public_message}

    return {"baseUrl": base_url, "robotsTxt": robots_txt, "summary": summary, "sitemap": sitemap}


# ═══════════════════════════════════════════════════════════════
# URL STATUS
# ═══════════════════════════════════════════════════════════════

def virustotal_url_id(url: str) -> str:
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


async def _virustotal_stats(ctx: ProbeContext, url: str) -> Optional[Dict[str, Any]]:
    key = ctx.settings.virustotal_api_key
    if not key:
        return None
    try:
        resp = await ctx.executor.api_request(
            VIRUSTOTAL_URL.format(virustotal_url_id(url)),
            headers={"x-apikey": key},
            timeout=TIMEOUT,
        )
    except GatewayError as e:
        logger.info("VirusTotal lookup unavailable: %s", e.message)
        return None
    return ((resp.data or {}).get("data") or {}).get("attributes", {}).get("last_analysis_stats")


async def run_url_status(ctx: ProbeContext) -> Dict[str, Any]:
    url = ctx.target.value
    resp = await ctx.executor.fetch(url, timeout=TIMEOUT, max_bytes=PAGE_LIMIT)
    return {
        "url": url,
        "finalUrl": resp.final_url,
        "statusCode": resp.status_code,
        "statusText": resp.reason,
        "responseTime": resp.elapsed_ms,
        "contentType": resp.headers.get("content-type"),
        "contentLength": resp.headers.get("content-length"),
        "server": resp.headers.get("server"),
        "virusTotal": await _virustotal_stats(ctx, url),
    }


# ═══════════════════════════════════════════════════════════════
# HTTP LATENCY
# ═══════════════════════════════════════════════════════════════

async def run_http_latency(ctx: ProbeContext) -> Dict[str, Any]:
    url = ctx.target.value
    host = urlsplit(url).hostname
    try:
        resp = await ctx.executor.fetch(url, timeout=TIMEOUT, max_redirects=5, max_bytes=PAGE_LIMIT)
    except UpstreamTimeout:
        return {"host": host, "url": url, "error": f"Request timed out (>{TIMEOUT}s)"}
    except UpstreamFailure as e:
        return {"host": host, "url": url, "error": e.public_message}

    return {
        "host": host,
        "url": url,
        "statusCode": resp.status_code,
        "statusText": resp.reason,
        "latency": resp.elapsed_ms,
        "contentType": resp.headers.get("content-type"),
        "redirected": resp.redirected,
    }
