from app.db.session import engine
from app.db.base import Base
from app.models import User  # noqa: F401

print("Creating users table...")
Base.metadata.create_all(bind=engine)
print("✅ users table ready")
