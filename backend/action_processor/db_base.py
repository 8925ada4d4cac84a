"""
Declarative base shared by the rate-limit and engagement models.

Kept free of model imports so models/ and repositories/ can both import it.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
