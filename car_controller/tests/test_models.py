from __future__ import annotations

import pytest

from car_controller.src.errors import AlreadyOwnedError, OwnerReferenceError
from car_controller.src.models import (
    ConfigMap,
    ObjectKey,
    OwnerReference,
    controller_owner,
    controller_reference_for,
    owner_key_for,
    set_controller_reference,
)
from car_controller.tests.fakes import car_owner_reference, make_car


def test_object_key_formats_as_namespaced_name() -> None:
    assert str(ObjectKey("garage", "beetle")) == "garage/beetle"
    assert ObjectKey("a", "z") < ObjectKey("b", "a")


def test_controller_reference_for_car() -> None:
    car = make_car()

    ref = controller_reference_for(car)

    assert ref == OwnerReference(
        api_version="example.example.com/v1",
        kind="Car",
        name="beetle",
        uid="uid-beetle",
        controller=True,
        block_owner_deletion=True,
    )
    assert ref.group == "example.example.com"


def test_set_controller_reference_appends_once() -> None:
    car = make_car()
    child = ConfigMap(namespace="garage", name="beetle")

    assert set_controller_reference(child, car) is True
    assert set_controller_reference(child, car) is False
    assert child.owner_references == [car_owner_reference(car)]


def test_set_controller_reference_keeps_unrelated_owners() -> None:
    car = make_car()
    other = OwnerReference(
        api_version="v1", kind="Secret", name="s", uid="u", controller=False
    )
    child = ConfigMap(namespace="garage", name="beetle", owner_references=[other])

    assert set_controller_reference(child, car) is True
    assert child.owner_references == [other, car_owner_reference(car)]


def test_set_controller_reference_refreshes_stale_uid_and_version() -> None:
    car = make_car()
    stale = OwnerReference(
        api_version="example.example.com/v1alpha1", kind="Car", name="beetle", uid="old-uid"
    )
    child = ConfigMap(namespace="garage", name="beetle", owner_references=[stale])

    assert set_controller_reference(child, car) is True
    assert child.owner_references == [car_owner_reference(car)]


def test_set_controller_reference_refuses_second_controller() -> None:
    car = make_car()
    foreign = OwnerReference(api_version="apps/v1", kind="Deployment", name="beetle", uid="d")
    child = ConfigMap(namespace="garage", name="beetle", owner_references=[foreign])

    with pytest.raises(AlreadyOwnedError, match="already controlled by Deployment beetle"):
        set_controller_reference(child, car)

    assert child.owner_references == [foreign]


def test_set_controller_reference_refuses_cross_namespace() -> None:
    car = make_car(namespace="garage")
    child = ConfigMap(namespace="showroom", name="beetle")

    with pytest.raises(OwnerReferenceError, match="cross-namespace"):
        set_controller_reference(child, car)


def test_owner_key_for_maps_controller_reference() -> None:
    car = make_car(name="bus")
    child = ConfigMap(
        namespace="garage", name="bus", owner_references=[car_owner_reference(car)]
    )

    assert controller_owner(child) == car_owner_reference(car)
    assert owner_key_for(child) == ObjectKey("garage", "bus")


def test_owner_key_for_ignores_non_controller_and_other_kinds() -> None:
    non_controller = ConfigMap(
        namespace="garage",
        name="bus",
        owner_references=[
            OwnerReference(
                api_version="example.example.com/v1",
                kind="Car",
                name="bus",
                uid="u",
                controller=False,
            )
        ],
    )
    other_kind = ConfigMap(
        namespace="garage",
        name="bus",
        owner_references=[
            OwnerReference(api_version="apps/v1", kind="Deployment", name="bus", uid="u")
        ],
    )

    assert owner_key_for(non_controller) is None
    assert owner_key_for(other_kind) is None
    assert owner_key_for(ConfigMap(namespace="garage", name="bus")) is None


def test_owner_key_for_checks_owner_group_when_given() -> None:
    car = make_car(name="bus")
    ours = ConfigMap(
        namespace="garage", name="bus", owner_references=[car_owner_reference(car)]
    )
    theirs = ConfigMap(
        namespace="garage",
        name="bus",
        owner_references=[
            OwnerReference(api_version="rentals.example.org/v1", kind="Car", name="bus", uid="u")
        ],
    )

    assert owner_key_for(ours, owner_group="example.example.com") == ObjectKey("garage", "bus")
    assert owner_key_for(theirs, owner_group="example.example.com") is None
    assert owner_key_for(theirs) == ObjectKey("garage", "bus")
