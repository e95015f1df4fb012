# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

import os
from pathlib import Path
from public import public

from .textutil import replace_tokens

ROOT_ENV_VAR = "PDK_ROOT"

@public
class PathResolver:
    """
    Rewrites path tokens found in a deck to absolute, lexically normalized
    paths.

    Occurrences of the root placeholder (``$PDK_ROOT`` or ``${PDK_ROOT}`` for
    the default variable name) are replaced by the root directory. The root
    comes from root_override if it is non-empty, else from the environment
    variable of the same name. Without a root, placeholders are left as
    written. Relative results are interpreted relative to base_dir.
    """

    def __init__(self, base_dir, root_override: str | None = None, root_var: str = ROOT_ENV_VAR):
        self.base_dir = Path(os.path.abspath(base_dir))
        self.root_var = root_var
        self.root = root_override or os.environ.get(root_var) or None

    def placeholders(self) -> tuple[str, str]:
        return f"${{{self.root_var}}}", f"${self.root_var}"

    def expand_root(self, value: str) -> str:
        if not self.root:
            return value
        return replace_tokens(value, {p: self.root for p in self.placeholders()})

    def resolve(self, raw_path: str) -> str:
        expanded = self.expand_root(raw_path)
        if not expanded:
            return expanded
        p = Path(expanded)
        if not p.is_absolute():
            p = self.base_dir / p
        return os.path.normpath(os.path.abspath(p))

    def __repr__(self):
        return f"PathResolver(base_dir={str(self.base_dir)!r}, root={self.root!r})"
