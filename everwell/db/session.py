import os
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from everwell.db.models import Base, MetricDefinition

# Override with DB_PATH when needed.
DB_PATH = os.getenv("DB_PATH", "./data/everwell.db")

connect_args = {"check_same_thread": False}

# slug, name, unit, input_kind, min, max, step, category, default_enabled
METRIC_CATALOG: list[tuple] = [
    ("weight_lbs", "Weight", "lbs", "number", 50, 700, 0.1, "Body", True),
    ("waist_in", "Waist", "in", "number", 15, 80, 0.1, "Body", False),
    ("blood_pressure", "Blood Pressure", "mmHg", "pair", None, None, None, "Vitals", False),
    ("resting_hr", "Resting Heart Rate", "bpm", "integer", 25, 220, 1, "Vitals", False),
    ("steps", "Steps", "steps", "integer", 0, 100000, 1, "Activity", True),
    ("workout_minutes", "Workout Minutes", "min", "integer", 0, 600, 1, "Activity", False),
    ("workout_done", "Worked Out", None, "boolean", None, None, None, "Activity", False),
    ("sleep_hours", "Sleep Hours", "hours", "number", 0, 24, 0.25, "Sleep", True),
    ("sleep_quality", "Sleep Quality", None, "scale", 1, 5, 1, "Sleep", False),
    ("water_oz", "Water Intake", "oz", "number", 0, 400, 1, "Nutrition", True),
    ("calories", "Calories", "kcal", "integer", 0, 15000, 1, "Nutrition", False),
    ("protein", "Protein", "g", "number", 0, 600, 1, "Nutrition", False),
    ("caffeine", "Caffeine", "mg", "number", 0, 2000, 1, "Nutrition", False),
    ("mood", "Mood", None, "scale", 1, 5, 1, "Wellbeing", True),
    ("energy", "Energy", None, "scale", 1, 5, 1, "Wellbeing", False),
    ("notes", "Notes", None, "text", None, None, None, "Wellbeing", False),
]


def _build_engine(db_path: str):
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def seed_metric_definitions(db: Session) -> int:
    existing = {row.slug for row in db.query(MetricDefinition.slug).all()}
    created = 0
    for order, (slug, name, unit, kind, low, high, step, category, default_enabled) in enumerate(METRIC_CATALOG):
        if slug in existing:
            continue
        db.add(
            MetricDefinition(
                slug=slug,
                name=name,
                unit=unit,
                input_kind=kind,
                min_value=low,
                max_value=high,
                step_value=step,
                category=category,
                default_enabled=default_enabled,
                sort_order=(order + 1) * 10,
            )
        )
        created += 1
    db.commit()
    return created


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_metric_definitions(db)
    finally:
        db.close()


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
