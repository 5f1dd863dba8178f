"""
Store credentials

One row per connected Shopify store. The sync engine reads the domain and
access token from here; the OAuth handshake that writes them lives elsewhere.
"""
from sqlalchemy import Column, String, DateTime
from datetime import datetime

from shopmirror.models.base import Base


class Store(Base):
    """Connected Shopify store"""
    __tablename__ = "stores"

    id = Column(String, primary_key=True, index=True)
    domain = Column(String, nullable=True)  # your-store.myshopify.com
    access_token = Column(String, nullable=True)  # Admin API access token
    currency = Column(String, default='USD')

    created_at = Column(DateTime, default=datetime.utcnow)
