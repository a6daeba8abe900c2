"""Async persistence for prompts and conversation threads."""

from promptrun.db.models import Base, Prompt, Thread
from promptrun.db.session import make_engine, make_session_factory

__all__ = ["Base", "Prompt", "Thread", "make_engine", "make_session_factory"]
