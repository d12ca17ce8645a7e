from rest_framework import serializers
from rest_framework.fields import empty

from common.serializers import TenantScopedPKField
from identity.serializers import UserSummarySerializer
from .models import (
    REDIRECT_STATUS_CODES, Media, MediaFolder, Menu, MenuItem, Page, Redirect, Template,
)
from .redirects import normalize_url


class TemplateSerializer(serializers.ModelSerializer):
    slug = serializers.SlugField(required=False, allow_blank=True)
    page_count = serializers.SerializerMethodField()

    class Meta:
        model = Template
        fields = ("id", "name", "slug", "description", "content", "fields", "settings", "category",
                  "is_active", "is_default", "page_count", "created_at", "updated_at")
        read_only_fields = ("is_default", "created_at", "updated_at")

    def get_page_count(self, obj):
        return obj.pages.count()

    def validate_fields(self, value):
        if not isinstance(value, list) or not all(isinstance(f, dict) and f.get("name") for f in value):
            raise serializers.ValidationError("Fields must be a list of objects with a name.")
        return value


class PageSerializer(serializers.ModelSerializer):
    slug = serializers.SlugField(required=False, allow_blank=True, max_length=255)
    template = TenantScopedPKField(queryset=Template.objects.filter(is_active=True), required=False, allow_null=True)
    parent = TenantScopedPKField(queryset=Page.objects.all(), required=False, allow_null=True)
    author = UserSummarySerializer(read_only=True)
    url = serializers.CharField(source="path", read_only=True)

    class Meta:
        model = Page
        fields = (
            "id", "title", "slug", "url", "content", "excerpt", "status", "published_at", "scheduled_at",
            "meta_title", "meta_description", "meta_keywords", "canonical_url", "og_image", "language",
            "is_homepage", "view_count", "template", "parent", "author", "created_at", "updated_at",
        )
        read_only_fields = ("published_at", "view_count", "created_at", "updated_at")

    def validate(self, attrs):
        if attrs.get("status") == "scheduled" and not attrs.get("scheduled_at"):
            raise serializers.ValidationError({"scheduled_at": ["A scheduled page needs a publish time."]})
        return attrs


class PageListSerializer(PageSerializer):
    class Meta(PageSerializer.Meta):
        fields = tuple(f for f in PageSerializer.Meta.fields if f != "content")


class PageScheduleSerializer(serializers.Serializer):
    scheduled_at = serializers.DateTimeField()


class PageDuplicateSerializer(serializers.Serializer):
    title = serializers.CharField(required=False, allow_blank=False, max_length=255)


class MediaFolderSerializer(serializers.ModelSerializer):
    parent = TenantScopedPKField(queryset=MediaFolder.objects.all(), required=False, allow_null=True)
    slug = serializers.SlugField(required=False, allow_blank=True)
    media_count = serializers.SerializerMethodField()

    class Meta:
        model = MediaFolder
        fields = ("id", "name", "slug", "description", "parent", "media_count", "created_at", "updated_at")
        read_only_fields = ("created_at", "updated_at")

    def get_media_count(self, obj):
        return obj.media.count()


class MediaSerializer(serializers.ModelSerializer):
    folder = TenantScopedPKField(queryset=MediaFolder.objects.all(), required=False, allow_null=True)
    url = serializers.SerializerMethodField()

    class Meta:
        model = Media
        fields = ("id", "name", "original_name", "url", "mime_type", "size", "alt_text", "caption", "tags",
                  "folder", "created_at", "updated_at")
        read_only_fields = ("original_name", "mime_type", "size", "created_at", "updated_at")

    def get_url(self, obj):
        return obj.file.url if obj.file else None

    def validate_tags(self, value):
        if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
            raise serializers.ValidationError("Tags must be a list of strings.")
        return list(dict.fromkeys(t.strip() for t in value if t.strip()))


class MediaUploadSerializer(serializers.Serializer):
    files = serializers.ListField(child=serializers.FileField(), allow_empty=False)
    folder = TenantScopedPKField(queryset=MediaFolder.objects.all(), required=False, allow_null=True)
    alt_text = serializers.CharField(required=False, allow_blank=True, default="")
    caption = serializers.CharField(required=False, allow_blank=True, default="")
    tags = serializers.ListField(child=serializers.CharField(), required=False, default=list)


class MenuSerializer(serializers.ModelSerializer):
    slug = serializers.SlugField(required=False, allow_blank=True)
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Menu
        fields = ("id", "name", "slug", "location", "description", "is_active", "item_count",
                  "created_at", "updated_at")
        read_only_fields = ("created_at", "updated_at")

    def get_item_count(self, obj):
        return obj.items.count()


class MenuItemSerializer(serializers.ModelSerializer):
    menu = TenantScopedPKField(queryset=Menu.objects.all())
    parent = TenantScopedPKField(queryset=MenuItem.objects.all(), required=False, allow_null=True)
    page = TenantScopedPKField(queryset=Page.objects.all(), required=False, allow_null=True)
    sort_order = serializers.IntegerField(required=False, min_value=0)
    href = serializers.CharField(read_only=True)

    class Meta:
        model = MenuItem
        fields = ("id", "menu", "parent", "page", "title", "url", "href", "target", "icon", "css_class",
                  "is_active", "require_auth", "permissions", "sort_order", "created_at", "updated_at")
        read_only_fields = ("created_at", "updated_at")

    def validate_permissions(self, value):
        if value in (None, ""):
            return {}
        roles = value.get("roles") if isinstance(value, dict) else None
        if not isinstance(value, dict) or (roles is not None and not isinstance(roles, list)):
            raise serializers.ValidationError('Permissions must look like {"roles": ["editor"]}.')
        return value

    def validate(self, attrs):
        if self.instance is not None and "menu" in attrs and attrs["menu"] != self.instance.menu:
            raise serializers.ValidationError({"menu": ["Items cannot be moved to another menu."]})
        return attrs


class MenuItemMoveSerializer(serializers.Serializer):
    parent_id = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    sort_order = serializers.IntegerField(min_value=0)


class MenuReorderSerializer(serializers.Serializer):
    menu = TenantScopedPKField(queryset=Menu.objects.all())
    items = serializers.ListField(child=serializers.DictField(), allow_empty=False)


class RedirectSerializer(serializers.ModelSerializer):
    status_code = serializers.ChoiceField(choices=REDIRECT_STATUS_CODES, required=False)

    class Meta:
        model = Redirect
        fields = ("id", "from_url", "to_url", "status_code", "description", "is_active", "hit_count",
                  "last_hit_at", "created_at", "updated_at")
        read_only_fields = ("hit_count", "last_hit_at", "created_at", "updated_at")

    def validate_from_url(self, value):
        return normalize_url(value)

    def validate_to_url(self, value):
        return normalize_url(value)


class RedirectImportSerializer(serializers.Serializer):
    file = serializers.FileField()
    has_headers = serializers.BooleanField(required=False, default=True)
    has_headers.default_empty_html = empty  # an unticked form field keeps the default


class JSONImportSerializer(serializers.Serializer):
    file = serializers.FileField(required=False)
    data = serializers.DictField(required=False)

    def validate(self, attrs):
        if not attrs.get("file") and not attrs.get("data"):
            raise serializers.ValidationError({"file": ["Upload a JSON file or send the data inline."]})
        return attrs