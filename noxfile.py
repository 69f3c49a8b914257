"""Nox sessions for the lottery engine."""

import nox

nox.options.sessions = ["tests", "lint"]
PYTHON = "3.11"
SOURCES = ["forum_lottery", "tests", "lotterybot.py", "noxfile.py"]


@nox.session(python=PYTHON)
def tests(session):
    """Run the test suite with coverage."""
    session.install("-e", ".[dev]")
    session.run(
        "pytest",
        "--cov=forum_lottery",
        "--cov-report=term-missing",
        "--cov-report=xml:coverage.xml",
        "--cov-fail-under=85",
        *session.posargs,
    )


@nox.session(python=PYTHON)
def lint(session):
    """Check style with ruff."""
    session.install("ruff>=0.1.0")
    session.run("ruff", "check", *SOURCES)
    session.run("ruff", "format", "--check", *SOURCES)


@nox.session(python=PYTHON)
def format_code(session):
    """Apply ruff formatting and autofixes."""
    session.install("ruff>=0.1.0")
    session.run("ruff", "format", *SOURCES)
    session.run("ruff", "check", "--fix", *SOURCES)


@nox.session(python=PYTHON)
def test_single(session):
    """Run one test file or test id: nox -s test_single -- tests/test_draw.py"""
    if not session.posargs:
        session.error("Please provide a test file or function to run")

    session.install("-e", ".[dev]")
    session.run("pytest", "-v", *session.posargs)
