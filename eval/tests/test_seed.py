from apps.api import crud, models
from apps.api.seed import seed_insights, seed_reference_data


def test_reference_data_is_idempotent(db):
    seed_reference_data(db)
    seed_reference_data(db)

    assert db.query(models.Intention).count() == 8
    levels = crud.list_sentiment_levels(db)
    assert len(levels) == 11
    assert levels[0].level == "fury"
    assert levels[-1].level == "gratitude"


def test_curated_insights_are_lower_cased_and_upserted(db):
    seed_insights(db, [{"name": "App Crashes", "description": "Crashes", "business_unit": "mobile"}])
    seed_insights(db, [{"name": "app crashes", "description": "App crashes or freezes"}])
    db.commit()

    insights = crud.list_insights(db)
    assert len(insights) == 1
    assert insights[0].name == "app crashes"
    assert insights[0].description == "App crashes or freezes"
    assert insights[0].ai_generated is False
