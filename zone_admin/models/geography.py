# zone_admin/models/geography.py

from flask import current_app
from sqlalchemy import Index
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class City(BaseModel):
    """Production city, matched to the provider through ``navio_city_key``."""

    __tablename__ = "cities"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    slug = db.Column(db.String(200), nullable=False, index=True)
    country_code = db.Column(db.String(2), nullable=False, default="NO")
    is_delivery = db.Column(db.Boolean, nullable=False, default=True, index=True)
    navio_city_key = db.Column(db.String(200), nullable=True, unique=True)
    navio_imported_at = db.Column(db.DateTime(timezone=True), nullable=True)

    districts = db.relationship("District", back_populates="city", cascade="all, delete-orphan")
    areas = db.relationship("Area", back_populates="city")

    def __repr__(self):
        return f"<City {self.name}>"

    @staticmethod
    def find_by_navio_key(key):
        """Find a city by its provider key with error handling"""
        try:
            return City.query.filter_by(navio_city_key=key).first()
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding city by navio key {key}: {str(e)}")
            return None


class District(BaseModel):
    """Production district inside a city."""

    __tablename__ = "districts"

    id = db.Column(db.Integer, primary_key=True)
    city_id = db.Column(db.Integer, db.ForeignKey("cities.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), nullable=False)
    is_delivery = db.Column(db.Boolean, nullable=False, default=True)
    navio_district_key = db.Column(db.String(400), nullable=True, unique=True)
    navio_imported_at = db.Column(db.DateTime(timezone=True), nullable=True)

    city = db.relationship("City", back_populates="districts")
    areas = db.relationship("Area", back_populates="district", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<District {self.name}>"


class Area(BaseModel):
    """Production delivery area; one per provider zone."""

    __tablename__ = "areas"

    id = db.Column(db.Integer, primary_key=True)
    district_id = db.Column(db.Integer, db.ForeignKey("districts.id"), nullable=False, index=True)
    city_id = db.Column(db.Integer, db.ForeignKey("cities.id"), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), nullable=False)
    is_delivery = db.Column(db.Boolean, nullable=False, default=True)
    navio_service_area_id = db.Column(db.String(64), nullable=True, unique=True)
    geofence_json = db.Column(db.JSON, nullable=True)
    geofence_center = db.Column(db.JSON, nullable=True)  # [lng, lat]
    navio_imported_at = db.Column(db.DateTime(timezone=True), nullable=True)

    city = db.relationship("City", back_populates="areas")
    district = db.relationship("District", back_populates="areas")

    __table_args__ = (Index("idx_area_city_delivery", "city_id", "is_delivery"),)

    def __repr__(self):
        return f"<Area {self.name}>"

    @property
    def has_geofence(self) -> bool:
        return bool(self.geofence_json)
