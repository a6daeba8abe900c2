"""Repositories over the prompt tree and conversation threads."""

from promptrun.repositories.prompt_repo import PromptTree, SQLAlchemyPromptRepository
from promptrun.repositories.thread_repo import SQLAlchemyThreadRepository, ThreadRepository

__all__ = [
    "PromptTree",
    "SQLAlchemyPromptRepository",
    "ThreadRepository",
    "SQLAlchemyThreadRepository",
]
