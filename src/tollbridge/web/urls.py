"""
URL configuration for the toll HTTP API.
"""

from django.contrib.auth import views as auth_views
from django.urls import path

from . import views

urlpatterns = [
    # Authentication
    path("login/", auth_views.LoginView.as_view(template_name="toll/login.html"), name="login"),
    path("logout/", auth_views.LogoutView.as_view(next_page="/login/"), name="logout"),
    # Toll API
    path("toll/import", views.toll_import, name="toll_import"),
    path("toll/transactions", views.toll_transactions, name="toll_transactions"),
    path("toll/dashboard", views.toll_dashboard, name="toll_dashboard"),
    path("toll/concept-invoices", views.concept_invoices, name="toll_concept_invoices"),
    path(
        "toll/invoices/<str:invoice_id>/add-toll",
        views.add_toll_to_invoice,
        name="toll_add_to_invoice",
    ),
]
