from typing import List, Optional, Literal, Union
from pydantic import BaseModel, ConfigDict
from datetime import datetime

# Raw numbers arrive from chat agents and forms as JSON numbers or numeric strings;
# units.py decides what is a usable magnitude.
Number = Union[float, int, str]
DateInput = Optional[str]

WeightUnit = Literal["kg", "lbs", "st_lbs"]

class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None
    auth_via: Literal["bearer", "connect_key"] = "bearer"

# Connect keys
class ConnectKeyRecord(BaseModel):
    """Row of the connect_keys table. Only the SHA-256 of the key is ever stored."""
    id: Optional[str] = None
    user_id: str
    key_hash: str
    created_at: Optional[datetime] = None
    expires_at: datetime
    active: bool = True
    revoked: bool = False
    last_used_at: Optional[datetime] = None
    label: Optional[str] = None

class IssuedKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    plain_key: str
    expires_at: datetime
    key_id: Optional[str] = None

class VerifiedKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_user_id: str
    key_id: Optional[str] = None
    expires_at: datetime

class IssueKeyResp(BaseModel):
    ok: bool = True
    connect_key: str
    expires_at: datetime

class VerifyKeyResp(BaseModel):
    ok: bool = True
    user_id: str
    expires_at: datetime

# Logging requests
class LogWeightReq(BaseModel):
    date: DateInput = None
    unit: str = "kg"
    weight: Optional[Number] = None
    stones: Optional[Number] = None
    pounds: Optional[Number] = None
    notes: Optional[str] = None

class LogMealReq(BaseModel):
    date: DateInput = None
    meal_description: Optional[str] = None
    syns: Optional[Number] = None
    calories: Optional[Number] = None
    healthy_extra_a_used: bool = False
    healthy_extra_b_used: bool = False
    notes: Optional[str] = None

class LogExerciseReq(BaseModel):
    date: DateInput = None
    activity: Optional[str] = None
    duration_minutes: Optional[Number] = None
    intensity: Optional[str] = None
    calories_burned: Optional[Number] = None
    steps: Optional[Number] = None
    distance_km: Optional[Number] = None
    notes: Optional[str] = None

class LogMeasurementsReq(BaseModel):
    date: DateInput = None
    unit: Literal["cm", "in"] = "cm"
    bust: Optional[Number] = None
    waist: Optional[Number] = None
    hips: Optional[Number] = None
    neck: Optional[Number] = None
    arm: Optional[Number] = None
    under_bust: Optional[Number] = None
    thighs: Optional[Number] = None
    knees: Optional[Number] = None
    ankles: Optional[Number] = None
    notes: Optional[str] = None

class UserGoalReq(BaseModel):
    goal_type: Optional[str] = None
    unit: Optional[str] = None
    target_value: Optional[Number] = None
    stones: Optional[Number] = None
    pounds: Optional[Number] = None
    target_date: DateInput = None

class UpdateUserSettingsReq(BaseModel):
    """PATCH body: only fields present in the request are written."""
    preferred_name: Optional[str] = None
    tone: Optional[str] = None
    preferred_weight_unit: Optional[WeightUnit] = None
    diet_preference: Optional[str] = None
    food_allergies: Optional[str] = None
    food_dislikes: Optional[str] = None
    typical_day: Optional[str] = None
    healthy_extra_a: Optional[str] = None
    healthy_extra_b: Optional[str] = None
    syn_limit: Optional[Number] = None
    target_weight: Optional[Number] = None
    target_weight_unit: WeightUnit = "kg"
    maintenance_mode_enabled: Optional[Union[bool, str, int]] = None

class UpdateFoodValueReq(BaseModel):
    food_name: Optional[str] = None
    syns: Optional[Number] = None
    date: DateInput = None
    notes: Optional[str] = None

class ResetReq(BaseModel):
    confirm: Optional[str] = None

# Responses
class RowsResp(BaseModel):
    ok: bool = True
    message: str
    data: List[dict] = []

class WeightPoint(BaseModel):
    date: str
    weight_kg: float

class WeightGraphResp(BaseModel):
    user_id: str
    data: List[WeightPoint]

class AuthEchoResp(BaseModel):
    ok: bool = True
    via: str
    user_id: str

class UserProfileResp(BaseModel):
    user_id: str
    email: Optional[str] = None
