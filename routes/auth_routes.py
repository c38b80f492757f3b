from fastapi import APIRouter, Depends, status

from models.mysql_models import User
from models.schemas import (
    AdminCreateBusinessRequest,
    LoginRequest,
    MoveBusinessRequest,
    RegisterRequest,
    RelationshipStatusRequest,
    SetPasswordRequest,
    SetRoleRequest,
    UserResponse,
)
from routes.deps import (
    get_access_service,
    get_auth_service,
    get_current_user,
    require_admin,
    require_super_admin,
    serialize,
)
from services.access_service import AccessService
from services.auth_service import AuthService
from services.errors import AuthorizationError, ValidationError

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post(
    "/register",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Register",
    description="Creates an unapproved user account"
)
def register(
    request: RegisterRequest,
    service: AuthService = Depends(get_auth_service)
):
    user = service.register(request)
    return {
        "success": True,
        "message": "Registration successful. Await admin approval.",
        "data": serialize(UserResponse, user)
    }


@router.post(
    "/login",
    response_model=dict,
    summary="Login"
)
def login(
    request: LoginRequest,
    service: AuthService = Depends(get_auth_service)
):
    token, user = service.login(request.email, request.password)
    return {"success": True, "data": {"token": token, "user": serialize(UserResponse, user)}}


@router.get("/me", response_model=dict, summary="Current user")
def me(user: User = Depends(get_current_user)):
    return {"data": serialize(UserResponse, user)}


@router.get(
    "/users",
    response_model=dict,
    summary="List users",
    description="Super admins see everyone; aggregators see their businesses"
)
def list_users(
    user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service)
):
    return {"data": serialize(UserResponse, service.list_users(user))}


@router.get("/pending", response_model=dict, summary="Users awaiting approval")
def list_pending(
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    return {"data": serialize(UserResponse, service.list_pending())}


@router.post("/approve/{user_id}", response_model=dict, summary="Approve user")
def approve_user(
    user_id: int,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    approved = service.approve_user(user_id, user.id)
    return {"success": True, "data": serialize(UserResponse, approved)}


@router.put("/role/{user_id}", response_model=dict, summary="Change user role")
def set_role(
    user_id: int,
    request: SetRoleRequest,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    updated = service.set_role(user_id, request.role.value)
    return {"success": True, "data": serialize(UserResponse, updated)}


@router.post(
    "/create-aggregator",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Create aggregator"
)
def create_aggregator(
    request: RegisterRequest,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    aggregator = service.create_aggregator(request, user.id)
    return {"success": True, "data": serialize(UserResponse, aggregator)}


@router.post(
    "/aggregator/business",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Create business under aggregator",
    description="Aggregators create businesses under themselves; super admins name the aggregator"
)
def create_business(
    request: AdminCreateBusinessRequest,
    user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service)
):
    aggregator_id = request.aggregator_user_id
    if user.role == "aggregator":
        if aggregator_id is None:
            aggregator_id = user.id
        elif aggregator_id != user.id:
            raise AuthorizationError("Aggregators can only create businesses under themselves")
    elif aggregator_id is None:
        raise ValidationError("aggregator_user_id is required")

    business = service.create_business(aggregator_id, request, user.id)
    return {"success": True, "data": serialize(UserResponse, business)}


@router.get("/aggregator/businesses", response_model=dict, summary="List own businesses")
def list_businesses(
    user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service)
):
    return {"data": serialize(UserResponse, service.list_businesses(user.id))}


@router.post("/move-business", response_model=dict, summary="Move business to another aggregator")
def move_business(
    request: MoveBusinessRequest,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    relationship = service.move_business(request.child_user_id, request.aggregator_user_id)
    return {
        "success": True,
        "data": {
            "parent_user_id": relationship.parent_user_id,
            "child_user_id": relationship.child_user_id,
            "status": relationship.status
        }
    }


@router.post("/set-password/{user_id}", response_model=dict, summary="Reset user password")
def set_password(
    user_id: int,
    request: SetPasswordRequest,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    service.set_password(user_id, request.password)
    return {"success": True, "message": "Password updated"}


@router.post("/deactivate/{user_id}", response_model=dict, summary="Deactivate user")
def deactivate_user(
    user_id: int,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    updated = service.set_active(user_id, False, user.id)
    return {"success": True, "data": serialize(UserResponse, updated)}


@router.post("/activate/{user_id}", response_model=dict, summary="Activate user")
def activate_user(
    user_id: int,
    user: User = Depends(require_super_admin),
    service: AuthService = Depends(get_auth_service)
):
    updated = service.set_active(user_id, True, user.id)
    return {"success": True, "data": serialize(UserResponse, updated)}


@router.put(
    "/relationships/{parent_id}/{child_id}",
    response_model=dict,
    summary="Set relationship status",
    description="Activates or deactivates an aggregator's access to a business without removing the link"
)
def set_relationship_status(
    parent_id: int,
    child_id: int,
    request: RelationshipStatusRequest,
    user: User = Depends(require_super_admin),
    service: AccessService = Depends(get_access_service)
):
    relationship = service.set_relationship_status(parent_id, child_id, request.status.value)
    return {
        "success": True,
        "data": {
            "parent_user_id": relationship.parent_user_id,
            "child_user_id": relationship.child_user_id,
            "status": relationship.status
        }
    }
