from django.contrib import admin

from .models import Media, MediaFolder, Menu, MenuItem, Page, Redirect, Template


@admin.register(Page)
class PageAdmin(admin.ModelAdmin):
    list_display = ("title", "slug", "tenant", "status", "is_homepage", "published_at", "view_count", "updated_at")
    list_filter = ("status", "language", "is_homepage", "tenant")
    search_fields = ("title", "slug", "meta_title")
    readonly_fields = ("published_at", "view_count", "last_viewed_at", "created_at", "updated_at")


@admin.register(Template)
class TemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "tenant", "category", "is_active", "is_default")
    list_filter = ("category", "is_active", "is_default")


@admin.register(MediaFolder)
class MediaFolderAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "tenant", "parent")


@admin.register(Media)
class MediaAdmin(admin.ModelAdmin):
    list_display = ("name", "tenant", "mime_type", "size", "folder", "created_at")
    list_filter = ("mime_type",)
    search_fields = ("name", "original_name", "alt_text")


class MenuItemInline(admin.TabularInline):
    model = MenuItem
    extra = 0
    fields = ("title", "url", "page", "parent", "sort_order", "is_active")


@admin.register(Menu)
class MenuAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "location", "tenant", "is_active")
    list_filter = ("location", "is_active")
    inlines = [MenuItemInline]


@admin.register(Redirect)
class RedirectAdmin(admin.ModelAdmin):
    list_display = ("from_url", "to_url", "status_code", "tenant", "is_active", "hit_count", "last_hit_at")
    list_filter = ("status_code", "is_active")
    search_fields = ("from_url", "to_url")
