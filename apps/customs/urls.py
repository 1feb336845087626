from django.urls import path

from apps.customs import views

app_name = "customs"

urlpatterns = [
    path("ledger/", views.ledger_view, name="ledger"),
    path("ledger/import/", views.ledger_import_view, name="ledger-import"),
    path("beginning-data/import/", views.beginning_data_import_view, name="beginning-data-import"),
    path("beginning-data/validate/", views.beginning_data_validate_view, name="beginning-data-validate"),
    path("stock/check-availability/", views.stock_availability_view, name="stock-availability"),
]
