from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.db.models import Count

from .models import Role, User, UserRole


class RoleGrantInline(admin.TabularInline):
    model = UserRole
    extra = 0
    fields = ['role', 'granted_at']
    readonly_fields = ['granted_at']


@admin.register(User)
class StaffAdmin(BaseUserAdmin):
    list_display = ['email', 'full_name', 'roles', 'license_number', 'is_active']
    list_filter = ['is_active', 'user_roles__role__name']
    search_fields = ['email', 'last_name', 'license_number']
    readonly_fields = ['id', 'last_login', 'created_at', 'updated_at']
    ordering = ['email']
    inlines = [RoleGrantInline]

    fieldsets = (
        (None, {'fields': ('id', 'email', 'password')}),
        ('Clinic profile', {'fields': ('first_name', 'last_name', 'license_number')}),
        ('Access', {'fields': ('is_active', 'is_staff', 'is_superuser')}),
        ('Activity', {'fields': ('last_login', 'created_at', 'updated_at')}),
    )
    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('email', 'password1', 'password2', 'first_name', 'last_name', 'license_number'),
        }),
    )

    @admin.display(description='Roles')
    def roles(self, obj):
        return ', '.join(sorted(obj.role_names)) or '-'


@admin.register(Role)
class RoleAdmin(admin.ModelAdmin):
    list_display = ['name', 'description', 'holders']
    readonly_fields = ['id', 'created_at']

    def get_queryset(self, request):
        return super().get_queryset(request).annotate(holders_count=Count('grants'))

    @admin.display(description='Holders', ordering='holders_count')
    def holders(self, obj):
        return obj.holders_count
