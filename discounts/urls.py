"""
URL routing for discount API endpoints.
"""
from django.urls import path
from . import views

app_name = 'discounts'

urlpatterns = [
    path('discounts/', views.DiscountCodeListView.as_view(), name='discount-list'),
    path('discounts/validate/', views.DiscountValidateView.as_view(), name='discount-validate'),
]
