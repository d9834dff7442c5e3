"""Tests for the session models and the provider projection."""
from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from trustudsel.models.session_models import ProfileSubmission, SessionState, UserSession


def test_projection_falls_back_to_username() -> None:
    user = UserSession.from_provider("student@state.edu", {})

    assert user.email == "student@state.edu"
    assert user.name == "student@state.edu"
    assert user.is_verified is False
    assert user.interested_categories == []


def test_projection_reads_custom_attributes() -> None:
    user = UserSession.from_provider("id-1", {
        "email": "student@state.edu",
        "custom:name": "Sam Student",
        "custom:university": "State University",
        "custom:interestedCategories": "Books, Electronics ,",
        "email_verified": "True",
        "picture": "id-1/photo.jpg",
    })

    assert user.email == "student@state.edu"
    assert user.name == "Sam Student"
    assert user.university == "State University"
    assert user.interested_categories == ["Books", "Electronics"]
    assert user.is_verified is True
    assert user.profile_image_ref == "id-1/photo.jpg"


def test_projection_is_structurally_comparable() -> None:
    attributes = {"email": "a@b.edu", "name": "A B"}

    assert UserSession.from_provider("a@b.edu", attributes) == UserSession.from_provider(
        "a@b.edu", dict(attributes),
    )
    assert UserSession.from_provider("a@b.edu", attributes) != UserSession.from_provider(
        "a@b.edu", {**attributes, "city": "Springfield"},
    )


def test_authenticated_state_requires_user() -> None:
    with pytest.raises(PydanticValidationError):
        SessionState(is_authenticated=True, user=None)


def test_profile_submission_renders_attributes() -> None:
    submission = ProfileSubmission(
        university=" State University ",
        city="Springfield",
        zipcode="12345",
        interested_categories=["Books"],
    )

    assert submission.to_attributes() == {
        "custom:university": "State University",
        "city": "Springfield",
        "zipcode": "12345",
        "custom:interestedCategories": '["Books"]',
    }
    assert submission.to_attributes("me/photo.jpg")["picture"] == "me/photo.jpg"
