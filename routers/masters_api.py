from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

import crud
from dependencies import get_actor, get_db, require_admin
from models import Actor, Location, LocationIn, Person, PersonIn

router = APIRouter()


@router.get("/locations", response_model=list[Location])
def list_locations_api(db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return crud.list_locations(db)


@router.get("/locations/base-warehouses", response_model=list[Location])
def base_warehouses_api(db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return crud.base_warehouses(db)


@router.post("/locations", response_model=Location, status_code=201)
def create_location_api(
    body: LocationIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    location = crud.create_location(db, body)
    if not location:
        raise HTTPException(status_code=409, detail="location name is empty or already exists")
    return location


@router.post("/locations/{location_id}/rename", response_model=Location)
def rename_location_api(
    location_id: str,
    new_name: str = Body(..., embed=True),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    if not crud.get_location(db, location_id):
        raise HTTPException(status_code=404, detail="location not found")
    if not crud.rename_location(db, location_id=location_id, new_name=new_name):
        raise HTTPException(status_code=409, detail="location name is empty or already exists")
    return crud.get_location(db, location_id)


@router.delete("/locations/{location_id}", status_code=204)
def delete_location_api(
    location_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    if not crud.get_location(db, location_id):
        raise HTTPException(status_code=404, detail="location not found")
    if not crud.delete_location(db, location_id=location_id):
        raise HTTPException(status_code=409, detail="location is still referenced")
    return None


@router.get("/people", response_model=list[Person])
def list_people_api(db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return crud.list_people(db)


@router.post("/people", response_model=Person, status_code=201)
def create_person_api(
    body: PersonIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    person = crud.create_person(db, body)
    if not person:
        raise HTTPException(status_code=409, detail="person name is empty or user already linked")
    return person


@router.get("/users/{user_id}/locations", response_model=list[str])
def user_locations_api(
    user_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    if not actor.is_admin and actor.user_id != user_id:
        raise HTTPException(status_code=403, detail="cannot view another user's locations")
    return sorted(crud.authorized_location_ids(db, user_id))


@router.post("/users/{user_id}/locations/{location_id}", status_code=204)
def grant_location_api(
    user_id: str,
    location_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    crud.grant_location(db, user_id=user_id, location_id=location_id, assigned_by=actor.user_id)
    return None


@router.delete("/users/{user_id}/locations/{location_id}", status_code=204)
def revoke_location_api(
    user_id: str,
    location_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    if not crud.revoke_location(db, user_id=user_id, location_id=location_id):
        raise HTTPException(status_code=404, detail="authorization not found")
    return None
