import os
import sys

import pytest
from sqlmodel import SQLModel, create_engine

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import db as db_mod
import location
from db import get_session
from models import Customer, Mechanic
from realtime import feed
from geocoding import geocoder


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh database file."""
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = create_engine(test_db, echo=False, connect_args={"check_same_thread": False})
    monkeypatch.setattr(db_mod, "engine", new_engine)
    monkeypatch.setattr(location, "_broadcasters", {})
    SQLModel.metadata.create_all(new_engine)
    feed.clear()
    geocoder.reset()
    yield
    feed.clear()
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


def make_customer(name="Alice", auth_id=None, lat=None, lng=None):
    session = get_session()
    c = Customer(name=name, phone="0700000001", car_type="sedan", auth_id=auth_id, lat=lat, lng=lng)
    session.add(c)
    session.commit()
    session.refresh(c)
    return c


def make_mechanic(name="Bob", lat=0.3476, lng=32.5825, online=True):
    session = get_session()
    m = Mechanic(name=name, phone="0710000001", specialization="engine", lat=lat, lng=lng, online=online)
    session.add(m)
    session.commit()
    session.refresh(m)
    return m
