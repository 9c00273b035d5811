"""
Reference data seeding.

This file:
- Upserts the intention taxonomy (keyed by type)
- Upserts the PIXE sentiment scale (keyed by level)
- Optionally loads curated insights from a JSON file

Safe to run any number of times.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from . import models
from .crud import dialect_insert


logger = logging.getLogger(__name__)


INTENTIONS: List[Dict[str, str]] = [
    {"type": "resolve", "name": "Resolve Issue", "description": "User wants to resolve a problem or find a solution"},
    {"type": "complain", "name": "Complain", "description": "User is expressing dissatisfaction or frustration"},
    {"type": "compare", "name": "Compare", "description": "User is comparing products, services, or options"},
    {"type": "cancel", "name": "Cancel", "description": "User wants to cancel a service, subscription, or order"},
    {"type": "inquire", "name": "Inquire", "description": "User is asking for information or clarification"},
    {"type": "praise", "name": "Praise", "description": "User is expressing satisfaction or giving positive feedback"},
    {"type": "suggest", "name": "Suggest", "description": "User is providing suggestions or recommendations"},
    {"type": "other", "name": "Other", "description": "Other types of intentions not covered above"},
]

# PIXE scale, most negative first
SENTIMENT_LEVELS: List[Dict[str, Any]] = [
    {"level": "doubt", "name": "Doubt", "severity": "low", "intensity_value": -1,
     "description": "Initial uncertainty, customer still confident but unsure"},
    {"level": "concern", "name": "Concern", "severity": "low", "intensity_value": -2,
     "description": "Growing unease, seeking confirmation and reassurance"},
    {"level": "annoyance", "name": "Annoyance", "severity": "medium", "intensity_value": -3,
     "description": "First clear irritation, expectations not being met"},
    {"level": "frustration", "name": "Frustration", "severity": "medium", "intensity_value": -4,
     "description": "Loss of patience, needs urgent support"},
    {"level": "anger", "name": "Anger", "severity": "high", "intensity_value": -5,
     "description": "Manifest anger, very negative experience"},
    {"level": "outrage", "name": "Outrage", "severity": "high", "intensity_value": -6,
     "description": "Sense of injustice, expectations far below standards"},
    {"level": "contempt", "name": "Contempt", "severity": "critical", "intensity_value": -7,
     "description": "Total rejection of product or service"},
    {"level": "fury", "name": "Fury", "severity": "critical", "intensity_value": -8,
     "description": "Emotional explosion, threats, point of no return"},
    {"level": "neutral", "name": "Neutral", "severity": "none", "intensity_value": 0,
     "description": "Objective reports without emotional charge"},
    {"level": "satisfaction", "name": "Satisfaction", "severity": "positive", "intensity_value": 1,
     "description": "Problem resolved, expectations met"},
    {"level": "gratitude", "name": "Gratitude", "severity": "positive", "intensity_value": 2,
     "description": "Explicit recognition of good service"},
]


def seed_intentions(db: Session) -> int:
    table = models.Intention.__table__
    for intention in INTENTIONS:
        stmt = dialect_insert(db, table).values(**intention)
        stmt = stmt.on_conflict_do_update(
            index_elements=["type"],
            set_={"name": intention["name"], "description": intention["description"], "updated_at": datetime.utcnow()},
        )
        db.execute(stmt)
    return len(INTENTIONS)


def seed_sentiment_levels(db: Session) -> int:
    table = models.SentimentLevel.__table__
    for level in SENTIMENT_LEVELS:
        stmt = dialect_insert(db, table).values(**level)
        stmt = stmt.on_conflict_do_update(
            index_elements=["level"],
            set_={
                "name": level["name"],
                "description": level["description"],
                "severity": level["severity"],
                "intensity_value": level["intensity_value"],
                "updated_at": datetime.utcnow(),
            },
        )
        db.execute(stmt)
    return len(SENTIMENT_LEVELS)


def seed_insights(db: Session, rows: List[Dict[str, Any]]) -> int:
    """
    Curated (human) insights.
    Each row: {"name", "description", "business_unit"?, "operational_area"?, "external_id"?}
    """
    table = models.Insight.__table__
    for row in rows:
        name = row["name"].strip().lower()
        values = {
            "name": name,
            "content": row["name"].strip(),
            "description": row.get("description") or row["name"].strip(),
            "ai_generated": False,
            "business_unit": row.get("business_unit"),
            "operational_area": row.get("operational_area"),
            "external_id": row.get("external_id"),
        }
        stmt = dialect_insert(db, table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["name"],
            set_={k: v for k, v in values.items() if k != "name"} | {"updated_at": datetime.utcnow()},
        )
        db.execute(stmt)
    return len(rows)


def seed_reference_data(db: Session) -> Dict[str, int]:
    counts = {
        "intentions": seed_intentions(db),
        "sentiment_levels": seed_sentiment_levels(db),
    }
    db.commit()
    logger.info("Reference data seeded", extra=counts)
    return counts


# ---------------------------------------------------------
# Entry point: python -m apps.api.seed [insights.json]
# ---------------------------------------------------------
if __name__ == "__main__":
    from .database import Base, SessionLocal, engine

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        print(seed_reference_data(db))
        if len(sys.argv) > 1:
            with open(sys.argv[1], encoding="utf-8") as f:
                count = seed_insights(db, json.load(f))
            db.commit()
            print(f"Seeded {count} insights")
    finally:
        db.close()
