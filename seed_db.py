import logging
import secrets
from datetime import timedelta

from database import SessionLocal, engine
import auth
import models

logger = logging.getLogger(__name__)

# Ensure tables exist
models.Base.metadata.create_all(bind=engine)

DEMO_PASSWORD = "secret123"

USERS = [
    {"name": "Asha Citizen", "email": "asha@example.com", "role": models.ISSUER},
    {
        "name": "Engr. Rao",
        "email": "rao@roads.example.com",
        "role": models.OFFICER,
        "category": "Roads",
        "zone": "North Zone",
        "designation": "Senior Engineer",
    },
    {
        "name": "Officer Meera",
        "email": "meera@water.example.com",
        "role": models.OFFICER,
        "category": "Water Supply",
        "zone": "Central Zone",
        "designation": "Assistant Officer",
    },
]

ISSUES = [
    {
        "title": "Deep pothole near the bus depot",
        "description": "Two-wheelers keep skidding around it after rain.",
        "category": "Roads",
        "location": "MG Road, opposite the bus depot",
        "zone": "North Zone",
        "lat": 12.9756,
        "lng": 77.6050,
        "priority": "high",
        "before_images": ["https://images.example.com/seed/pothole-1.jpg"],
    },
    {
        "title": "No water supply for three days",
        "description": "The whole lane has had no municipal water since Monday.",
        "category": "Water Supply",
        "location": "4th Cross, Gandhi Nagar",
        "zone": "Central Zone",
        "priority": "medium",
        "before_images": ["https://images.example.com/seed/dry-tap.jpg"],
    },
    {
        "title": "Broken street light",
        "description": "Light pole flickers and goes dark after 9pm.",
        "category": "Street Lights",
        "location": "Lake View Park entrance",
        "priority": "low",
        "before_images": ["https://images.example.com/seed/street-light.jpg"],
    },
]


def get_or_create_user(db, row):
    user = db.query(models.User).filter(models.User.email == row["email"]).first()
    if user:
        return user
    user = models.User(hashed_password=auth.get_password_hash(DEMO_PASSWORD), **row)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created %s: %s", user.role, user.name)
    return user


def seed_data():
    db = SessionLocal()
    try:
        if db.query(models.Issue).count() > 0:
            logger.info("Database already has data.")
            return

        users = [get_or_create_user(db, row) for row in USERS]
        reporter = users[0]

        now = models.utcnow()
        for offset, row in enumerate(ISSUES):
            row = dict(row)
            images = row.pop("before_images")
            created = now - timedelta(days=len(ISSUES) - offset)
            issue = models.Issue(
                id=secrets.token_hex(6),
                reporter_id=reporter.id,
                status=models.PENDING,
                created_at=created,
                updated_at=created,
                **row,
            )
            for url in images:
                issue.images.append(models.IssueImage(url=url, slot=models.BEFORE, uploaded_by=reporter.id))
            db.add(issue)
            logger.info("Added: %s (%s)", issue.title, issue.id)

        db.commit()
        logger.info("Seeding complete. Demo password for all users: %s", DEMO_PASSWORD)
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    seed_data()
