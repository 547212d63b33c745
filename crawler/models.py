# crawler/models.py
import re
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SanitizerRule(BaseModel):
    """Regex replace applied to a scraped SKU, e.g. stripping a 'Vörunúmer:' prefix."""

    model_config = ConfigDict(frozen=True)

    pattern: str
    replacement: str = ""

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, v):
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid sanitizer pattern {v!r}: {e}") from e
        return v

    def apply(self, text):
        return re.sub(self.pattern, self.replacement, text)


class SelectorSkuRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: Literal["selector"] = "selector"
    selector: str


class UrlSkuRule(BaseModel):
    """SKU taken from the page URL path, split on `delimiter`."""

    model_config = ConfigDict(frozen=True)

    source: Literal["url"] = "url"
    delimiter: str = "/"
    index: Union[Literal["first", "last"], int] = "last"


SkuRule = Annotated[Union[SelectorSkuRule, UrlSkuRule], Field(discriminator="source")]


class TableAttributeSelectors(BaseModel):
    """Attributes laid out as one flat table; the whole table is a single group."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["table"] = "table"
    table: str
    attribute: str
    label: str
    value: str
    default_group_name: str = "Uncategorized"


class GroupedAttributeSelectors(TableAttributeSelectors):
    model_config = ConfigDict(frozen=True)

    kind: Literal["grouped"] = "grouped"
    group: str
    group_name: Optional[str] = None


AttributeSelectors = Annotated[
    Union[TableAttributeSelectors, GroupedAttributeSelectors],
    Field(discriminator="kind"),
]


class CategorySelectors(BaseModel):
    model_config = ConfigDict(frozen=True)

    container: str
    splitter: Optional[str] = None
    item: Optional[str] = None


class ProductSelectors(BaseModel):
    """
    Selectors locating a product page and each of its fields.

    Every selector except `product_page` is evaluated relative to the
    product container matched by `product_page`.
    """

    model_config = ConfigDict(frozen=True)

    product_page: str
    list_price: str
    sku: SkuRule
    old_price: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    in_stock: Optional[str] = None
    in_stock_text: Optional[str] = None
    clickers: Tuple[str, ...] = ()
    attributes: Optional[AttributeSelectors] = None
    categories: Optional[CategorySelectors] = None

    @field_validator("sku", mode="before")
    @classmethod
    def _sku_shorthand(cls, v):
        # a bare string is a DOM selector
        if isinstance(v, str):
            return {"source": "selector", "selector": v}
        if isinstance(v, dict) and "source" not in v:
            return {"source": "selector", **v}
        return v

    @field_validator("attributes", mode="before")
    @classmethod
    def _attribute_kind(cls, v):
        if isinstance(v, dict) and "kind" not in v:
            return {"kind": "grouped" if v.get("group") else "table", **v}
        return v


class StoreConfig(BaseModel):
    """
    One store as stored in the `stores` collection.

    Documents may keep crawler/feed settings nested under `options`, the
    layout older documents use; they are flattened on load.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Any = Field(default=None, alias="_id")
    name: str
    crawl_type: Literal["feed", "crawler"] = Field(alias="type")
    scraper_enabled: bool = True
    start_url: Optional[str] = None
    feed_url: Optional[str] = None
    product_page_identifier: Optional[str] = None
    selectors: Optional[ProductSelectors] = None
    sanitizers: Tuple[SanitizerRule, ...] = ()
    url_whitelist: Tuple[str, ...] = ()
    url_blacklist: Tuple[str, ...] = ()
    scroll_to_bottom: bool = False
    menu_clicker: Optional[str] = None
    category_ban_list: Tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _flatten_options(cls, data):
        if isinstance(data, dict) and isinstance(data.get("options"), dict):
            data = {**data["options"], **{k: v for k, v in data.items() if k != "options"}}
        return data

    @model_validator(mode="after")
    def _required_for_type(self):
        if self.crawl_type == "crawler":
            missing = [
                f
                for f in ("start_url", "selectors", "product_page_identifier")
                if getattr(self, f) is None
            ]
            if missing:
                raise ValueError(f"crawler store {self.name!r} is missing {missing}")
        elif self.feed_url is None:
            raise ValueError(f"feed store {self.name!r} is missing feed_url")
        return self


class Attribute(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: str


class AttributeGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    attributes: List[Attribute]


class ProductSnapshot(BaseModel):
    """Point-in-time view of one product, built once per product page per crawl."""

    model_config = ConfigDict(frozen=True)

    sku: str
    price: Union[int, float]
    sale_price: Optional[Union[int, float]] = None
    title: Optional[str] = None
    brand: Optional[str] = None
    gtin: Optional[str] = None
    image: Optional[str] = None
    description: Optional[str] = None
    in_stock: Optional[bool] = None
    attributes: Optional[List[AttributeGroup]] = None
    categories: Optional[List[str]] = None
    url: Optional[str] = None
