from django.urls import path, include
from common.autoapi import build_router_for_app

# Customer uses crm.views.CustomerViewSet; Lead gets an auto-built tenant-scoped viewset
router = build_router_for_app("crm")

urlpatterns = [path('', include(router.urls))]
