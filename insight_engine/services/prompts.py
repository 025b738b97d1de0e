import os

from jinja2 import Environment, FileSystemLoader

# ─── Jinja2 Template Environment ─────────────────────────────────────────────
TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")
_jinja_env = Environment(loader=FileSystemLoader(TEMPLATE_DIR), trim_blocks=True, lstrip_blocks=True)


def render_prompt(name: str, **context) -> str:
    """Render ``templates/prompts/<name>.txt``."""
    return _jinja_env.get_template(f"prompts/{name}.txt").render(**context).strip()


def render_email(name: str, **context) -> str:
    """Render ``templates/email/<name>.txt``."""
    return _jinja_env.get_template(f"email/{name}.txt").render(**context)
