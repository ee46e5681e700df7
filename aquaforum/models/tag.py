from tortoise import fields
from .base import BaseModel


class Tag(BaseModel):
    name = fields.CharField(max_length=50, unique=True, index=True)
    usage_count = fields.IntField(default=0, index=True)

    class Meta:
        table = "tags"
