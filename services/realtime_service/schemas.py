from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class SubscribeMessage(BaseModel):
    type: Literal["subscribe"]
    orderId: int
    role: Literal["student", "restaurant", "courier"]


class UnsubscribeMessage(BaseModel):
    type: Literal["unsubscribe"]
    orderId: int


class LocationMessage(BaseModel):
    type: Literal["location"]
    orderId: int
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


ClientMessage = Annotated[
    Union[SubscribeMessage, UnsubscribeMessage, LocationMessage], Field(discriminator="type")
]

client_message_adapter = TypeAdapter(ClientMessage)
