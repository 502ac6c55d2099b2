# calsync/repositories/user_repository.py
from typing import Optional
from sqlalchemy.orm import Session

from calsync.models.project import Project, Technician
from calsync.models.user import User
from calsync.repositories.base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(User, db)

    def get_owned_project(self, user_id: int, project_id: int) -> Optional[Project]:
        """Get a project only if the user owns it."""
        return (
            self.db.query(Project)
            .filter(Project.id == project_id, Project.owner_id == user_id)
            .first()
        )

    def get_technician(self, technician_id: int) -> Optional[Technician]:
        return self.db.get(Technician, technician_id)
