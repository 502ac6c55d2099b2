# scripts/seed_data.py
import sys
from datetime import timedelta
from pathlib import Path

# Add the parent directory to sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.orm import Session
from calsync import models
from calsync.core.security import create_access_token
from calsync.db.base import Base, SessionLocal, engine


def seed_owner(db: Session) -> models.User:
    """Seed a demo business owner with one project and its technicians."""
    owner = db.query(models.User).filter_by(email="owner@example.com").first()
    if not owner:
        owner = models.User(email="owner@example.com", name="Demo Owner", is_active=True)
        db.add(owner)
        db.commit()
        db.refresh(owner)

    project = db.query(models.Project).filter_by(owner_id=owner.id, name="Demo Plumbing").first()
    if not project:
        project = models.Project(owner_id=owner.id, name="Demo Plumbing", timezone="UTC")
        db.add(project)
        db.commit()
        db.refresh(project)

    for name in ("Sam", "Alex"):
        technician = db.query(models.Technician).filter_by(
            project_id=project.id, name=name
        ).first()
        if not technician:
            db.add(models.Technician(project_id=project.id, name=name))

    db.commit()
    return owner


def main():
    """Main function to seed data."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        owner = seed_owner(db)
        print("Database seeded successfully!")
        # Tokens are normally issued by the identity service in front of the API
        print("Bearer token for the demo owner:")
        print(create_access_token(owner.id, expires_delta=timedelta(days=7)))
    finally:
        db.close()


if __name__ == "__main__":
    main()
