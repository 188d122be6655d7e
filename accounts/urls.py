from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from .views import LoginView, UserProfileView

app_name = 'accounts'

urlpatterns = [
    path('auth/login/', LoginView.as_view(), name='login'),
    path('auth/token/refresh/', TokenRefreshView.as_view(), name='token-refresh'),
    path('profile/', UserProfileView.as_view(), name='user-profile'),
]
