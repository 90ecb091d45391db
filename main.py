from __future__ import annotations

import sys
from pathlib import Path


def _ensure_project_root() -> None:
    root = Path(__file__).resolve().parent
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


def main() -> int:
    _ensure_project_root()
    from mdbook_docx.render_context import main as render_main

    return render_main()


if __name__ == "__main__":
    sys.exit(main())
