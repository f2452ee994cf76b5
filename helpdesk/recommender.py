"""Suggests known fixes by comparing free text with resolved tickets.

The index is rebuilt in full from the database whenever a ticket is resolved
or deleted. Lookups are restricted to the ticket ids the caller may see, so
a user is only ever pointed at their own history.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import linear_kernel
from sqlalchemy.orm import Session

from helpdesk.models import Ticket


logger = logging.getLogger(__name__)


@dataclass
class IndexedSolution:
    ticket_id: int
    ticket_number: str
    title: str
    category: str
    department: str
    solution: str

    def as_suggestion(self, rank: int, score: float) -> dict:
        return {
            "rank": rank,
            "score": round(score, 2),
            "ticket_id": self.ticket_id,
            "ticket_number": self.ticket_number,
            "title": self.title,
            "category": self.category,
            "department": self.department,
            "solution": self.solution,
        }


def solution_document(ticket: Ticket) -> str:
    # the title and category weigh double: they name the problem, the rest narrates it
    parts = [ticket.title, ticket.title, ticket.category or "", ticket.category or "",
             ticket.description, ticket.solution or ""]
    return " ".join(part for part in parts if part)


class SolutionRecommender:
    def __init__(self, max_features: int = 5000) -> None:
        self.max_features = max_features
        self.reset()

    def reset(self) -> None:
        self.vectorizer: TfidfVectorizer | None = None
        self.entries: list[IndexedSolution] = []
        self.ticket_ids = np.array([], dtype=int)
        self.matrix = None

    @property
    def is_ready(self) -> bool:
        return self.matrix is not None

    def rebuild_cache(self, db: Session) -> int:
        solved = (
            db.query(Ticket)
            .filter(Ticket.status == "resolved", Ticket.solution.isnot(None))
            .order_by(Ticket.ticket_id.asc())
            .all()
        )
        self.reset()
        if not solved:
            return 0

        vectorizer = TfidfVectorizer(
            max_features=self.max_features,
            stop_words="english",
            ngram_range=(1, 2),
            sublinear_tf=True,
        )
        try:
            matrix = vectorizer.fit_transform([solution_document(t) for t in solved])
        except ValueError:
            # every document reduced to stop words
            logger.warning("Solution index left empty: no usable terms in %d tickets", len(solved))
            return 0

        self.vectorizer = vectorizer
        self.matrix = matrix
        self.entries = [
            IndexedSolution(
                ticket_id=t.ticket_id,
                ticket_number=t.ticket_number,
                title=t.title,
                category=t.category or "Uncategorized",
                department=t.department.name if t.department else "Unassigned",
                solution=t.solution,
            )
            for t in solved
        ]
        self.ticket_ids = np.array([t.ticket_id for t in solved], dtype=int)
        logger.debug("Solution index rebuilt with %d tickets", len(self.entries))
        return len(self.entries)

    def get_recommendations(
        self,
        text: str,
        top_k: int = 3,
        min_score: float = 0.15,
        allowed_ids: set[int] | None = None,
    ) -> list[dict]:
        """Rank indexed solutions against ``text``.

        ``allowed_ids`` limits the candidates; None means every indexed ticket.
        Scores of zero never count as a match, whatever ``min_score`` is.
        """
        if not self.is_ready or not (text or "").strip():
            return []

        scores = linear_kernel(self.vectorizer.transform([text]), self.matrix).ravel()
        if allowed_ids is not None:
            scores = np.where(np.isin(self.ticket_ids, list(allowed_ids)), scores, 0.0)

        ranked = [i for i in np.argsort(-scores, kind="stable") if scores[i] > 0 and scores[i] >= min_score]
        return [
            self.entries[i].as_suggestion(rank, float(scores[i]))
            for rank, i in enumerate(ranked[:top_k], start=1)
        ]


recommender = SolutionRecommender(max_features=5000)
