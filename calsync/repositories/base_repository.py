# calsync/repositories/base_repository.py
from typing import TypeVar, Generic, Type, Optional, Any, Dict, Union
from sqlalchemy.orm import Session
from pydantic import BaseModel

from calsync.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)  # type: ignore


class BaseRepository(Generic[ModelType]):
    """
    Base repository with common CRUD operations.
    Extend this class for specific models.
    """

    def __init__(self, model: Type[ModelType], db: Session):
        self.model = model
        self.db = db

    def get(self, id: Any) -> Optional[ModelType]:
        """Get a single record by ID."""
        return self.db.get(self.model, id)

    def get_by(self, **kwargs) -> Optional[ModelType]:
        """Get a single record by arbitrary filters."""
        query = self.db.query(self.model)
        for key, value in kwargs.items():
            if hasattr(self.model, key):
                query = query.filter(getattr(self.model, key) == value)
        return query.first()

    def create(self, obj_in: Union[Dict[str, Any], BaseModel]) -> ModelType:
        """Create a new record."""
        if isinstance(obj_in, BaseModel):
            obj_in_data = obj_in.model_dump(exclude_unset=True)
        else:
            obj_in_data = obj_in

        db_obj = self.model(**obj_in_data)
        return self.save(db_obj)

    def update(
        self, db_obj: ModelType, obj_in: Union[Dict[str, Any], BaseModel]
    ) -> ModelType:
        """Update an existing record."""
        if isinstance(obj_in, BaseModel):
            update_data = obj_in.model_dump(exclude_unset=True)
        else:
            update_data = obj_in

        for field, value in update_data.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)

        return self.save(db_obj)

    def save(self, obj: ModelType) -> ModelType:
        """Save an already instantiated model object."""
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj
