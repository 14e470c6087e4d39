"""
HTML pages for the authorization flow (consent screen and browser-facing errors).
"""

from pathlib import Path
from typing import List

from jinja2 import Environment, FileSystemLoader

from reader_api.constants import REFRESH_TOKEN_EXPIRY_DAYS, SCOPE_DESCRIPTIONS

_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)


def _format_lifetime_text(days: int) -> str:
    """Format refresh token lifetime as human-readable text."""
    if days == 1:
        return "1 day"
    if days % 7 == 0 and days < 30:
        weeks = days // 7
        return f"{weeks} week{'s' if weeks > 1 else ''}"
    return f"{days} days"


def consent_page(
    action_url: str,
    client_id: str,
    client_name: str,
    redirect_uri: str,
    scopes: List[str],
    code_challenge: str,
    state: str = "",
    resource: str = "",
) -> str:
    """Render the approve/deny screen; the form posts back to the authorize endpoint."""
    template = _env.get_template("consent.jinja2")
    return template.render(
        action_url=action_url,
        client_id=client_id,
        client_name=client_name,
        redirect_uri=redirect_uri,
        scope=" ".join(scopes),
        scopes=[(scope, SCOPE_DESCRIPTIONS.get(scope, scope)) for scope in scopes],
        code_challenge=code_challenge,
        code_challenge_method="S256",
        state=state or "",
        resource=resource or "",
        lifetime_text=_format_lifetime_text(REFRESH_TOKEN_EXPIRY_DAYS),
    )


def error_page(error: str, error_description: str = "") -> str:
    """Generate an error page HTML."""
    template = _env.get_template("error.jinja2")
    return template.render(
        error=error,
        error_description=error_description,
    )
