from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    dependencies = [
        ('clinical', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='diagnosisstatushistory',
            name='diagnosis',
            field=models.ForeignKey(
                on_delete=django.db.models.deletion.PROTECT,
                related_name='status_history',
                to='clinical.diagnosis'
            ),
        ),
    ]
