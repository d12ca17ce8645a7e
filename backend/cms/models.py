from django.conf import settings as django_settings
from django.db import models
from django.db.models import Q

from common.models import BaseModel


PAGE_STATUS = (
    ("draft", "Draft"),
    ("published", "Published"),
    ("scheduled", "Scheduled"),
    ("archived", "Archived"),
)

REDIRECT_STATUS_CODES = (
    (301, "Moved Permanently"),
    (302, "Found"),
    (303, "See Other"),
    (307, "Temporary Redirect"),
    (308, "Permanent Redirect"),
)

MENU_ITEM_TARGETS = (
    ("_self", "Same window"),
    ("_blank", "New window"),
)


class Template(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_templates")
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=160)
    description = models.TextField(blank=True, default="")
    content = models.TextField(blank=True, default="")
    fields = models.JSONField(default=list, blank=True)  # [{"name": "hero", "type": "text"}, ...]
    settings = models.JSONField(default=dict, blank=True)
    category = models.CharField(max_length=60, default="custom")
    is_active = models.BooleanField(default=True)
    is_default = models.BooleanField(default=False)
    created_by = models.ForeignKey(django_settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
                                   related_name="+")

    class Meta:
        ordering = ("name",)
        constraints = [
            models.UniqueConstraint(fields=["tenant", "slug"], name="uniq_template_slug_per_tenant"),
            models.UniqueConstraint(fields=["tenant"], condition=Q(is_default=True),
                                    name="uniq_default_template_per_tenant"),
        ]

    def __str__(self):
        return self.name


class Page(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_pages")
    title = models.CharField(max_length=255)
    slug = models.SlugField(max_length=255)
    content = models.TextField(blank=True, default="")
    excerpt = models.TextField(blank=True, default="")
    status = models.CharField(max_length=16, choices=PAGE_STATUS, default="draft", db_index=True)
    published_at = models.DateTimeField(null=True, blank=True)
    scheduled_at = models.DateTimeField(null=True, blank=True)

    meta_title = models.CharField(max_length=255, blank=True, default="")
    meta_description = models.TextField(blank=True, default="")
    meta_keywords = models.CharField(max_length=255, blank=True, default="")
    canonical_url = models.URLField(blank=True, default="")
    og_image = models.CharField(max_length=500, blank=True, default="")

    language = models.CharField(max_length=10, default="en")
    is_homepage = models.BooleanField(default=False)
    view_count = models.PositiveIntegerField(default=0)
    last_viewed_at = models.DateTimeField(null=True, blank=True)

    template = models.ForeignKey(Template, on_delete=models.PROTECT, null=True, blank=True, related_name="pages")
    parent = models.ForeignKey("self", on_delete=models.CASCADE, null=True, blank=True, related_name="children")
    author = models.ForeignKey(django_settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
                               related_name="cms_pages")

    class Meta:
        ordering = ("-updated_at",)
        constraints = [models.UniqueConstraint(fields=["tenant", "slug"], name="uniq_page_slug_per_tenant")]
        indexes = [models.Index(fields=["tenant", "status", "scheduled_at"])]

    def __str__(self):
        return self.title

    @property
    def path(self) -> str:
        return "/" if (self.is_homepage or self.slug == "home") else f"/{self.slug}"


class MediaFolder(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_media_folders")
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=160)
    description = models.TextField(blank=True, default="")
    parent = models.ForeignKey("self", on_delete=models.CASCADE, null=True, blank=True, related_name="children")

    class Meta:
        ordering = ("name",)

    def __str__(self):
        return self.name


class Media(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_media")
    file = models.FileField(upload_to="cms/%Y/%m/")
    name = models.CharField(max_length=255, blank=True, default="")
    original_name = models.CharField(max_length=255, blank=True, default="")
    mime_type = models.CharField(max_length=120, blank=True, default="")
    size = models.PositiveBigIntegerField(default=0)
    alt_text = models.CharField(max_length=255, blank=True, default="")
    caption = models.TextField(blank=True, default="")
    tags = models.JSONField(default=list, blank=True)
    folder = models.ForeignKey(MediaFolder, on_delete=models.SET_NULL, null=True, blank=True, related_name="media")
    uploaded_by = models.ForeignKey(django_settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
                                    related_name="+")

    class Meta:
        ordering = ("-created_at",)
        verbose_name_plural = "media"

    def __str__(self):
        return self.original_name or self.name

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class Menu(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_menus")
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=160)
    location = models.CharField(max_length=60, blank=True, default="")  # header|footer|sidebar|...
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ("name",)
        constraints = [models.UniqueConstraint(fields=["tenant", "slug"], name="uniq_menu_slug_per_tenant")]

    def __str__(self):
        return self.name


class MenuItem(BaseModel):
    """
    Node of a menu tree. Siblings (same menu + parent) are ordered by
    `sort_order`; the menu services keep those numbers dense.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_menu_items")
    menu = models.ForeignKey(Menu, on_delete=models.CASCADE, related_name="items")
    parent = models.ForeignKey("self", on_delete=models.SET_NULL, null=True, blank=True, related_name="children")
    page = models.ForeignKey(Page, on_delete=models.SET_NULL, null=True, blank=True, related_name="menu_items")
    title = models.CharField(max_length=150)
    url = models.CharField(max_length=500, blank=True, default="")
    target = models.CharField(max_length=10, choices=MENU_ITEM_TARGETS, default="_self")
    icon = models.CharField(max_length=60, blank=True, default="")
    css_class = models.CharField(max_length=120, blank=True, default="")
    is_active = models.BooleanField(default=True)
    require_auth = models.BooleanField(default=False)
    permissions = models.JSONField(default=dict, blank=True)  # {"roles": ["editor", ...]}
    sort_order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("sort_order", "created_at")
        indexes = [models.Index(fields=["menu", "parent", "sort_order"])]

    def __str__(self):
        return self.title

    @property
    def href(self) -> str:
        if self.page_id:
            return self.page.path
        return self.url


class Redirect(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="cms_redirects")
    from_url = models.CharField(max_length=500)
    to_url = models.CharField(max_length=500)
    status_code = models.PositiveSmallIntegerField(choices=REDIRECT_STATUS_CODES, default=301)
    description = models.CharField(max_length=255, blank=True, default="")
    is_active = models.BooleanField(default=True)
    hit_count = models.PositiveIntegerField(default=0)
    last_hit_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(django_settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
                                   related_name="+")

    class Meta:
        ordering = ("from_url",)
        constraints = [models.UniqueConstraint(fields=["tenant", "from_url"], name="uniq_redirect_source_per_tenant")]

    def __str__(self):
        return f"{self.from_url} -> {self.to_url}"
