from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Import all models so that Base.metadata.create_all picks them up.
from app.models.api_key import EmailApiKey  # noqa: E402, F401
from app.models.form import EmailTemplate, FormType, NotificationRecipient  # noqa: E402, F401
from app.models.email_log import EmailLog  # noqa: E402, F401
