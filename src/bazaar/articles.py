"""Marketplace listings addressed by stable id."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import NotFound
from .guard import require_authenticated, require_owner_or_admin
from .models import Article, ArticleCreate, ArticleUpdate
from .sessions import Session
from .store import RecordStore

logger = logging.getLogger(__name__)


def _find(articles: List[Dict[str, Any]], article_id: str) -> Dict[str, Any]:
    for a in articles:
        if a.get("id") == article_id:
            return a
    raise NotFound(f"Article not found: {article_id}")


class ArticleService:
    """CRUD over the ``articles`` collection.

    Ownership checks run against the record loaded inside the transaction,
    so a concurrent change of owner cannot be raced past.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def list(self) -> List[Dict[str, Any]]:
        return self.store.load("articles")

    def get(self, article_id: str) -> Dict[str, Any]:
        return _find(self.store.load("articles"), article_id)

    def authorize(self, session: Optional[Session], article_id: str) -> Dict[str, Any]:
        """Return the article if the session may change it."""
        article = self.get(article_id)
        require_owner_or_admin(session, article.get("owner"))
        return article

    def create(self, session: Optional[Session], fields: ArticleCreate) -> Dict[str, Any]:
        session = require_authenticated(session)
        article = Article(owner=session.user_id, **fields.model_dump()).dump()
        with self.store.transaction("articles") as articles:
            articles.append(article)
        logger.info("User %s created article %s", session.user_id, article["id"])
        return article

    def update(self, session: Optional[Session], article_id: str, changes: ArticleUpdate) -> Dict[str, Any]:
        with self.store.transaction("articles") as articles:
            article = _find(articles, article_id)
            require_owner_or_admin(session, article.get("owner"))
            article.update(changes.changes())
        return article

    def set_image(self, session: Optional[Session], article_id: str, reference: str) -> Dict[str, Any]:
        with self.store.transaction("articles") as articles:
            article = _find(articles, article_id)
            require_owner_or_admin(session, article.get("owner"))
            article["image"] = reference
        return article

    def delete(self, session: Optional[Session], article_id: str) -> None:
        with self.store.transaction("articles") as articles:
            article = _find(articles, article_id)
            session = require_owner_or_admin(session, article.get("owner"))
            articles.remove(article)
        logger.info("User %s deleted article %s", session.user_id, article_id)
