"""
URL routing for order API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('orders/', views.OrderListCreateView.as_view(), name='order-list'),
    path('orders/export/', views.OrderExportView.as_view(), name='order-export'),
    path('orders/<int:pk>/', views.OrderDetailView.as_view(), name='order-detail'),
    path('orders/<int:pk>/ship/', views.ShipOrderView.as_view(), name='order-ship'),
    path('orders/<int:pk>/deliver/', views.DeliverOrderView.as_view(), name='order-deliver'),
    path('orders/<int:pk>/cancel/', views.CancelOrderView.as_view(), name='order-cancel'),
    path('orders/<int:pk>/return/', views.ReturnOrderView.as_view(), name='order-return'),
]
