from django.contrib import admin

from .models import Building, Unit


class UnitInline(admin.TabularInline):
    model = Unit
    extra = 0
    fields = ('unit_number', 'floor', 'size_sqm', 'owner_name', 'tenant_user', 'is_active')


@admin.register(Building)
class BuildingAdmin(admin.ModelAdmin):
    list_display = ('name', 'city', 'manager', 'is_active', 'created_at')
    search_fields = ('name', 'address', 'city')
    inlines = [UnitInline]


@admin.register(Unit)
class UnitAdmin(admin.ModelAdmin):
    list_display = ('unit_number', 'building', 'floor', 'size_sqm', 'tenant_user', 'is_active')
    list_filter = ('building', 'is_active')
    search_fields = ('unit_number', 'owner_name', 'tenant_user__email')
