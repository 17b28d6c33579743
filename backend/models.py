import json
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class Sheet(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)  # USERS, PRODUCTS, ...
    headers = db.Column(db.Text, nullable=False, default='[]')  # JSON list, first row of the sheet
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    rows = db.relationship('SheetRow', backref='sheet', lazy=True, cascade="all, delete-orphan",
                           order_by='SheetRow.position')

    @property
    def header_list(self):
        return json.loads(self.headers or '[]')

    def set_headers(self, headers):
        self.headers = json.dumps(list(headers), ensure_ascii=False)


class SheetRow(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    sheet_id = db.Column(db.Integer, db.ForeignKey('sheet.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    cells = db.Column(db.Text, nullable=False, default='[]')  # JSON list of scalar cell values

    __table_args__ = (db.UniqueConstraint('sheet_id', 'position', name='unique_sheet_position'),)

    @property
    def cell_list(self):
        return json.loads(self.cells or '[]')

    def set_cells(self, cells):
        self.cells = json.dumps(list(cells), ensure_ascii=False)
