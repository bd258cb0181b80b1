"""Starter templates for new workspaces.

Each template yields exactly one entry point file.
"""

import time

from workspace.models import FileMetadata, WorkspaceFile, WorkspaceSnapshot, guess_language

_PYTHON_BASIC = {
    "main.py": (
        'print("Hello from the sandbox runner!")\n'
        "x = 2 + 3\n"
        'print("x =", x)\n'
    ),
}

_PYTHON_PACKAGE = {
    "main.py": (
        "from app.greeting import greet\n"
        "\n"
        'print(greet("world"))\n'
    ),
    "app/__init__.py": "",
    "app/greeting.py": (
        "def greet(name):\n"
        '    return f"Hello, {name}!"\n'
    ),
    "tests/test_greeting.py": (
        "from app.greeting import greet\n"
        "\n"
        "\n"
        "def test_greet():\n"
        '    assert greet("Ada") == "Hello, Ada!"\n'
    ),
}

TEMPLATE_IDS = ("default", "python-basic", "python-package")


def _file(path: str, content: str, *, is_entry_point: bool = False, now: float) -> WorkspaceFile:
    return WorkspaceFile(
        path=path,
        language=guess_language(path),
        content=content,
        created_at=now,
        updated_at=now,
        metadata=FileMetadata(is_entry_point=is_entry_point),
    )


def make_template(template_id: str, name: str) -> WorkspaceSnapshot:
    """Build a fresh snapshot for ``template_id``.

    Unknown template ids fall back to the default template.
    """
    now = time.time()

    if template_id == "python-basic":
        sources = dict(_PYTHON_BASIC)
    elif template_id == "python-package":
        sources = {**_PYTHON_PACKAGE, "README.md": f"# {name}\n\nRun `main.py`; tests live in `tests/`.\n"}
    else:
        template_id = "default"
        sources = {
            "main.py": 'print("Workspace ready.")\n',
            "README.md": f"# {name}\n\nThis workspace was generated from the default template.\n",
        }

    files = {
        path: _file(path, content, is_entry_point=(path == "main.py"), now=now)
        for path, content in sources.items()
    }
    return WorkspaceSnapshot(
        name=name,
        files=files,
        created_at=now,
        updated_at=now,
        template_id=template_id,
    )
