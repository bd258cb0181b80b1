"""Bundle workspace files into one self-contained Python program.

The generated program carries every Python source of the working set as an
embedded JSON document and installs a meta path finder that imports from it,
so a fresh interpreter (or a fresh container) needs nothing but the program
text on stdin. The entry file runs as ``__main__``. In test mode the program
then runs each test file and calls its top-level ``test_*`` functions.

An uncaught exception is reported on stderr as a single marker line followed
by JSON (exception type, message, traceback without bootstrap frames), after
which the program exits with status 1. ``SystemExit`` is left alone so exit
codes chosen by user code survive.
"""

import json

ERROR_MARKER = "__sandbox_error__:"

_BOOTSTRAP = r'''
import importlib.abc
import importlib.util
import json
import linecache
import sys
import traceback
import types

_SOURCES = json.loads(__SOURCES__)
_ENTRY = __ENTRY__
_TEST_FILES = json.loads(__TESTS__)
_MARKER = __MARKER__
_BOOTSTRAP_FILE = sys._getframe().f_code.co_filename

for _path, _source in _SOURCES.items():
    linecache.cache[_path] = (len(_source), None, _source.splitlines(True), _path)


class _WorkspaceImporter(importlib.abc.MetaPathFinder, importlib.abc.Loader):
    def find_spec(self, fullname, path=None, target=None):
        base = fullname.replace(".", "/")
        if base + ".py" in _SOURCES:
            return importlib.util.spec_from_loader(fullname, self, origin=base + ".py")
        if base + "/__init__.py" in _SOURCES:
            return importlib.util.spec_from_loader(
                fullname, self, origin=base + "/__init__.py", is_package=True
            )
        if any(p.startswith(base + "/") for p in _SOURCES):
            return importlib.util.spec_from_loader(fullname, self, is_package=True)
        return None

    def create_module(self, spec):
        return None

    def exec_module(self, module):
        origin = module.__spec__.origin
        if origin in _SOURCES:
            module.__file__ = origin
            exec(compile(_SOURCES[origin], origin, "exec"), module.__dict__)


def _run_file(path, name):
    module = types.ModuleType(name)
    module.__file__ = path
    sys.modules[name] = module
    exec(compile(_SOURCES[path], path, "exec"), module.__dict__)
    return module


def _run_tests():
    passed = 0
    for index, path in enumerate(_TEST_FILES):
        module = _run_file(path, "_workspace_test_%d" % index)
        for name, value in list(vars(module).items()):
            if name.startswith("test_") and callable(value):
                value()
                passed += 1
                print("PASSED %s::%s" % (path, name))
    print("%d passed" % passed)


def _report(exc):
    frames = [
        frame
        for frame in traceback.extract_tb(exc.__traceback__)
        if frame.filename != _BOOTSTRAP_FILE
        and not frame.filename.startswith("<frozen ")
    ]
    lines = ["Traceback (most recent call last):\n"]
    lines.extend(traceback.format_list(frames))
    lines.extend(traceback.format_exception_only(type(exc), exc))
    payload = {
        "type": type(exc).__name__,
        "message": str(exc),
        "traceback": "".join(lines),
    }
    sys.stdout.flush()
    sys.stderr.write(_MARKER + json.dumps(payload) + "\n")
    sys.stderr.flush()


sys.meta_path.insert(0, _WorkspaceImporter())
try:
    _run_file(_ENTRY, "__main__")
    if _TEST_FILES:
        _run_tests()
except SystemExit:
    raise
except BaseException as _exc:
    _report(_exc)
    sys.exit(1)
'''


def python_sources(files: dict[str, str]) -> dict[str, str]:
    """Python files of a working set, the part that gets embedded."""
    return {path: content for path, content in files.items() if path.endswith(".py")}


def bundle_program(
    files: dict[str, str],
    entry_file: str,
    test_files: list[str] | None = None,
) -> str:
    """Build the program text for one run.

    Args:
        files: Working set, path to content
        entry_file: Path executed as ``__main__``
        test_files: Paths whose ``test_*`` functions run after the entry

    Returns:
        Python source ready to be fed to an interpreter.

    Raises:
        ValueError: If the entry or a test file is not a Python file of the
            working set.
    """
    sources = python_sources(files)
    for path in [entry_file, *(test_files or [])]:
        if path not in sources:
            raise ValueError(f"Not a Python file in the working set: {path}")

    return (
        # Sources go in last so user code is never rewritten
        _BOOTSTRAP.replace("__MARKER__", repr(ERROR_MARKER))
        .replace("__ENTRY__", repr(entry_file))
        .replace("__TESTS__", repr(json.dumps(test_files or [])))
        .replace("__SOURCES__", repr(json.dumps(sources)))
    )
