"""
URL routing for gateway webhooks.
"""
from django.urls import path
from . import views

app_name = 'webhooks'

urlpatterns = [
    path('webhooks/stripe/', views.StripeWebhookView.as_view(), name='stripe-webhook'),
]
