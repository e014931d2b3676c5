# file: app/tools/templates.py
import random
import re
from typing import Mapping, Optional

_VAR = re.compile(r"{{\s*([\w.]+)\s*}}")
# innermost {a|b|c} group; braces without a '|' are left alone
_SPIN = re.compile(r"\{([^{}|]*\|[^{}]*)\}")


def render_template(template: str, variables: Mapping[str, object]) -> str:
    """Replace {{name}} placeholders; unknown names stay as written."""
    def sub(m: re.Match) -> str:
        key = m.group(1)
        return str(variables[key]) if key in variables and variables[key] is not None else m.group(0)
    return _VAR.sub(sub, template or "")


def render_spintax(text: str, rng: Optional[random.Random] = None) -> str:
    """Resolve {a|b|c} alternatives, innermost first, so nesting works."""
    rng = rng or random
    text = text or ""
    while True:
        m = _SPIN.search(text)
        if not m:
            return text
        choice = rng.choice([part.strip() for part in m.group(1).split("|")])
        text = text[:m.start()] + choice + text[m.end():]
