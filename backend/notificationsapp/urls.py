from rest_framework.routers import DefaultRouter
from django.urls import path, include
from .views import NotificationTemplateViewSet, NotificationDispatchViewSet

router = DefaultRouter()
router.register(r'template', NotificationTemplateViewSet, basename="notif-template")
router.register(r'dispatch', NotificationDispatchViewSet, basename="notif-dispatch")

urlpatterns = [path('', include(router.urls))]
