from sqlalchemy import event, insert, Connection
from sqlalchemy.orm import Mapper

from foldly.db.models.user import User
from foldly.db.models.workspace import Workspace


@event.listens_for(User, "after_insert")
def create_default_workspace(_mapper: Mapper, connection: Connection, target: User):
    connection.execute(
        insert(Workspace).values(
            user_id=target.id,
            name="My Files",
        )
    )
