import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('waterbill', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='MeterAdjustment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('old_reading', models.DecimalField(decimal_places=2, help_text='Last value on the old gauge', max_digits=12)),
                ('new_reading', models.DecimalField(decimal_places=2, help_text='Starting value after the adjustment', max_digits=12)),
                ('adjustment_type', models.CharField(choices=[('gauge_replacement', 'Gauge replacement'), ('manual_correction', 'Manual correction'), ('meter_reset', 'Meter reset')], default='gauge_replacement', max_length=30)),
                ('reason', models.TextField()),
                ('adjustment_date', models.DateField(default=django.utils.timezone.localdate)),
                ('notes', models.TextField(blank=True)),
                ('created_by', models.CharField(blank=True, max_length=150)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='meter_adjustments', to='waterbill.customer')),
            ],
            options={
                'db_table': 'meter_adjustments',
                'ordering': ['-adjustment_date', '-created_at'],
            },
        ),
    ]
