"""
URL routing for inventory API endpoints.
"""
from django.urls import path
from . import views

app_name = 'inventory'

urlpatterns = [
    path('skus/', views.StockUnitListView.as_view(), name='sku-list'),
    path('skus/<int:pk>/', views.StockUnitDetailView.as_view(), name='sku-detail'),
    path('skus/<int:pk>/movements/', views.StockMovementListView.as_view(), name='sku-movements'),
    path('skus/<int:pk>/adjust/', views.StockAdjustView.as_view(), name='sku-adjust'),
]
