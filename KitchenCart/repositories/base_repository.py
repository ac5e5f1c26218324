from sqlmodel import SQLModel, Session, select
from typing import TypeVar, Generic, Type, Optional, List, Callable

from KitchenCart.exceptions import ResourceNotFoundError

T = TypeVar('T', bound=SQLModel)


class BaseRepository(Generic[T]):
    """
    Shared lookups for table models. Repositories are the only layer that
    talks SQL; services hand them an open Session.
    """

    not_found_error: Callable[[str, str], Exception] = None

    def __init__(self, model_class: Type[T]):
        self.model_class = model_class

    def get_by_id(self, session: Session, id: str) -> Optional[T]:
        return session.exec(select(self.model_class).where(self.model_class.id == id)).first()

    def get_by_id_or_raise(self, session: Session, id: str) -> T:
        model = self.get_by_id(session, id)
        if model is None:
            name = self.model_class.__name__.replace("Model", "")
            if self.not_found_error is not None:
                raise self.not_found_error(f"{name} {id} not found", id)
            raise ResourceNotFoundError(f"{name} {id} not found", resource_type=name, resource_id=id)
        return model

    def get_all(self, session: Session) -> List[T]:
        return session.exec(select(self.model_class)).all()

    def save(self, session: Session, model: T) -> T:
        """Insert or update a row and return it refreshed."""
        session.add(model)
        session.commit()
        session.refresh(model)
        return model
