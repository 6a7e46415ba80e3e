"""
Shared — リクエストモデルの基底クラス

フロントエンドとサービス間の JSON は camelCase (productId, orderId ...)。
Python 側では snake_case で扱う。
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
